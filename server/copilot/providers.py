"""
Collaborator interfaces consumed by the copilot pipeline.

The pipeline only talks to these abstractions; concrete HTTP adapters live
in searxng.py, fetcher.py and ollama.py, and tests substitute fakes.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional

from pydantic import BaseModel

from .models import WebSearchResult


class FetchedPage(BaseModel):
    """Readable text of a fetched page"""
    url: str
    title: str = ""
    text: str = ""
    content_type: str = "html"


class SearchProvider(ABC):
    """Abstract base class for search providers"""

    @abstractmethod
    async def search(self, query: str, max_results: int = 10) -> List[WebSearchResult]:
        """Execute a search query"""
        pass

    async def close(self) -> None:
        pass


class ContentFetcher(ABC):
    """Fetches a page and returns its readable text"""

    @abstractmethod
    async def fetch(self, url: str) -> FetchedPage:
        pass

    async def close(self) -> None:
        pass


class LanguageModel(ABC):
    """Text completion, whole or streamed token by token"""

    @abstractmethod
    async def complete(self, prompt: str, system: Optional[str] = None) -> str:
        pass

    @abstractmethod
    def stream(self, prompt: str, system: Optional[str] = None) -> AsyncIterator[str]:
        pass

    async def close(self) -> None:
        pass


class EmbeddingModel(ABC):
    """Dense vector embeddings"""

    model_name: str = "default"

    @abstractmethod
    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        pass

    async def embed_query(self, text: str) -> List[float]:
        vectors = await self.embed_documents([text])
        return vectors[0]

    async def close(self) -> None:
        pass
