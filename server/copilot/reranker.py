"""
Embedding-based reranking

Scores each document by cosine similarity to the query, drops everything
under the threshold, sorts descending and caps the list. Embedding failures
fall back to the unranked URL-deduplicated documents under the same cap.
"""

import logging
from typing import Awaitable, Callable, List, Sequence, Union

import numpy as np

from .models import SearchDocument
from .providers import EmbeddingModel

logger = logging.getLogger("copilot.reranker")


def dedupe_by_url(documents: Sequence[SearchDocument]) -> List[SearchDocument]:
    """First occurrence of each URL, order preserved"""
    seen = set()
    unique = []
    for doc in documents:
        if doc.url in seen:
            continue
        seen.add(doc.url)
        unique.append(doc)
    return unique


def cosine_similarities(query_vector: Sequence[float], document_vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Cosine similarity of one vector against each row; zero-norm rows score 0"""
    query = np.asarray(query_vector, dtype=float)
    matrix = np.asarray(document_vectors, dtype=float)
    if matrix.size == 0:
        return np.zeros(0)

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, dots / norms, 0.0)
    return scores


def rank_documents(
    documents: Sequence[SearchDocument],
    query_vector: Sequence[float],
    document_vectors: Sequence[Sequence[float]],
    threshold: float,
    cap: int
) -> List[SearchDocument]:
    """Threshold, sort and cap documents given precomputed embeddings"""
    scores = cosine_similarities(query_vector, document_vectors)
    kept = [
        doc.model_copy(update={"similarity": float(score)})
        for doc, score in zip(documents, scores)
        if score >= threshold
    ]
    kept.sort(key=lambda d: d.similarity, reverse=True)
    return kept[:cap]


EmbedFn = Callable[[List[str]], Awaitable[List[List[float]]]]


async def rerank(
    query: str,
    documents: Sequence[SearchDocument],
    embed: Union[EmbeddingModel, EmbedFn],
    threshold: float,
    cap: int
) -> List[SearchDocument]:
    """
    Deduplicate, embed query and documents in one batch, then rank.

    `embed` is an EmbeddingModel or any batch embedding callable, so callers
    can wrap the call with deduplication and timeouts.
    """
    unique = dedupe_by_url(documents)
    if not unique:
        return []

    embed_fn = embed.embed_documents if isinstance(embed, EmbeddingModel) else embed
    try:
        vectors = await embed_fn([query] + [doc.content for doc in unique])
    except Exception as e:
        logger.warning(f"Embedding failed, using unranked documents: {e}")
        return unique[:cap]

    if len(vectors) != len(unique) + 1:
        logger.warning(f"Embedding returned {len(vectors)} vectors for {len(unique) + 1} inputs, using unranked documents")
        return unique[:cap]

    ranked = rank_documents(unique, vectors[0], vectors[1:], threshold, cap)
    logger.debug(f"Reranked {len(unique)} documents: {len(ranked)} kept at threshold {threshold}")
    return ranked
