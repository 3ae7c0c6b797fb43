"""
Prompt builders for page summarization and answer synthesis
"""

from datetime import datetime, timezone
from typing import Optional, Sequence

from .models import SearchDocument

EXTRACTION_PROMPT = """Summarize the following web page content in 2-3 dense paragraphs.
Keep every concrete fact, figure, name and date that could help answer a research question.
Do not add information that is not in the content.

Content:
{content}

Summary:"""

SYNTHESIS_PROMPT = """You are a research assistant. Using the sources gathered below, write a detailed, accurate and well-structured answer to the user's question.

Guidelines:
- Use the gathered information and cite sources as [number]
- Include relevant details and context
- Structure the answer in clear paragraphs
- If sources conflict, present the different perspectives

Question: {query}

Context from research:
{context}

Current date and time: {date}

System instructions: {system_instructions}

Answer:"""


def build_context(documents: Sequence[SearchDocument]) -> str:
    """Numbered `[i] title / URL / content` blocks separated by rules"""
    if not documents:
        return "No sources were found."
    blocks = [
        f"[{index}] {doc.title}\nURL: {doc.url}\nContent: {doc.content}"
        for index, doc in enumerate(documents, start=1)
    ]
    return "\n\n---\n\n".join(blocks)


def build_extraction_prompt(content: str) -> str:
    return EXTRACTION_PROMPT.format(content=content)


def build_synthesis_prompt(
    query: str,
    documents: Sequence[SearchDocument],
    system_instructions: Optional[str] = None,
    now: Optional[datetime] = None
) -> str:
    return SYNTHESIS_PROMPT.format(
        query=query,
        context=build_context(documents),
        date=(now or datetime.now(timezone.utc)).isoformat(),
        system_instructions=system_instructions or "None",
    )
