"""Prompt assembly for cited answer generation.

This module only builds prompt strings from already retrieved citation
records. Retrieval, ranking and model invocation happen elsewhere.

Design constraints:
    - Deterministic construction for identical inputs.
    - Fixed ordering of prompt components.
    - No I/O and no global state mutation.

Prompt safety model:
    Source text is scraped from the open web and interpolated verbatim.
    Sanitization happens in the scraper; here the prompt only instructs the
    model to treat sources as evidence.
"""

from typing import List

from citesearch.retrieval.assembler import CitationRecord


# =========================================================
# SYSTEM IDENTITY
# =========================================================
# Sent as the system message by every backend.

SYSTEM_IDENTITY = (
    "You are a helpful AI assistant that helps users answer questions using the "
    "provided sources. If the answer is not in the sources, say you don't know "
    "rather than making up an answer."
)


# =========================================================
# SOURCE BLOCKS
# =========================================================
# One block per citation record, numbered by citation number so that inline
# markers `[n]` map back to `CitationRecord.number`.

def format_source_block(record: CitationRecord) -> str:
    """Render one citation record as a `Name/url/fact/id` block."""
    return (
        f"Name: {record.title}\n"
        f"url: {record.url}\n"
        f"fact: {record.text.strip()}\n"
        f"id: {record.number}\n"
    )


def build_sources_block(records: List[CitationRecord]) -> str:
    if not records:
        return "No sources were retrieved."
    return "\n".join(format_source_block(record) for record in records)


# =========================================================
# ANSWER PROMPT
# =========================================================
# Prompt component order:
#   1) Source blocks
#   2) User question
#   3) Citation instructions

def build_answer_prompt(question: str, records: List[CitationRecord]) -> str:
    """Build the user prompt for a cited answer.

    Args:
        question: Original user query.
        records: Citation records in nearest-first order.

    Returns:
        Prompt string with sources, question and citation instructions.

    Edge cases:
        Empty `records` produces an explicit "No sources" section so the model
        answers that it does not know.
    """
    return (
        "SOURCES:\n"
        + build_sources_block(records)
        + "\nQUESTION:\n"
        + question.strip()
        + "\n\nINSTRUCTIONS:\n"
        "Please provide a detailed answer to the question above only using the sources provided.\n"
        "Include in-text citations like this [1] for each significant fact or statement "
        "at the end of the sentence.\n"
        "At the end of your response, list all sources in a citation section with the "
        "format: [citation number] Name - URL.\n"
    )
