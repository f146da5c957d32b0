"""Prompting package.

This package contains deterministic prompt-construction helpers for the answer
stage. It does not perform retrieval or model invocation.
"""
