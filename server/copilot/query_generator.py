"""
Sub-query generation

Asks the language model to break one user question into several focused
search queries. The model's free text is parsed best-effort: anything that
does not yield at least one usable query falls back to the original query.
"""

import logging
import re
from typing import List, Sequence

from .models import ChatMessage
from .providers import LanguageModel

logger = logging.getLogger("copilot.query_generator")

QUERY_GENERATOR_PROMPT = """You are a research assistant that breaks complex questions into focused web search queries.

Generate up to {limit} specific, targeted search queries for the user question below. Each query should cover a different aspect of the question.

Guidelines:
- Make queries specific and search-friendly
- Cover different angles of the question
- Avoid vague or overly broad terms
- Put each query on its own line and close the list with </queries>

User question: {query}
Chat history:
{chat_history}

Search queries (one per line):
<queries>
"""

_CLOSE_TAG = "</queries>"
_OPEN_TAG = "<queries>"
_LIST_MARKER = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def format_chat_history(history: Sequence[ChatMessage]) -> str:
    """Render prior turns as `role: content` lines"""
    if not history:
        return "(none)"
    return "\n".join(f"{message.role}: {message.content}" for message in history)


def build_query_prompt(query: str, history: Sequence[ChatMessage], limit: int) -> str:
    return QUERY_GENERATOR_PROMPT.format(
        query=query,
        chat_history=format_chat_history(history),
        limit=limit,
    )


def parse_sub_queries(text: str, fallback_query: str, limit: int) -> List[str]:
    """
    Extract the queries listed before </queries>.

    The prompt already opens the block, so the opening tag is optional in the
    reply. Bullets and numbering are stripped and duplicates dropped. Returns
    [fallback_query] when no usable query is found.
    """
    if not text or _CLOSE_TAG not in text:
        return [fallback_query]

    block = text.split(_CLOSE_TAG, 1)[0]
    if _OPEN_TAG in block:
        block = block.rsplit(_OPEN_TAG, 1)[1]

    queries: List[str] = []
    seen = set()
    for line in block.splitlines():
        candidate = _LIST_MARKER.sub("", line).strip().strip('"').strip()
        if not candidate or candidate.lower() in seen:
            continue
        seen.add(candidate.lower())
        queries.append(candidate)

    if not queries:
        return [fallback_query]
    return queries[:max(1, limit)]


async def generate_sub_queries(
    llm: LanguageModel,
    query: str,
    history: Sequence[ChatMessage],
    limit: int
) -> List[str]:
    """One model call, parsed with fallback"""
    response = await llm.complete(build_query_prompt(query, history, limit))
    if _CLOSE_TAG not in (response or ""):
        logger.warning(f"Unparsable sub-query output, using original query: {(response or '')[:80]!r}")
    return parse_sub_queries(response, query, limit)
