"""Knowledge lookup consulted once before a session's first model call."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

_WORD = re.compile(r"[a-z0-9]+")


@dataclass
class KnowledgeSnippet:
    content: str
    source: str = ""
    score: float = 0.0
    metadata: dict = field(default_factory=dict)


class KnowledgeBase(ABC):
    """Search collaborator. Ingestion and embeddings live outside the engine."""

    @abstractmethod
    async def search(self, query: str, top_k: int = 5) -> list[KnowledgeSnippet]: ...


class StaticKnowledgeBase(KnowledgeBase):
    """Keyword-overlap search over a fixed list of documents.

    Usage:
        kb = StaticKnowledgeBase({"units.md": "All amounts are in EUR."})
        snippets = await kb.search("amount currency", top_k=3)
    """

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self.documents = dict(documents or {})

    def add(self, source: str, content: str) -> None:
        self.documents[source] = content

    async def search(self, query: str, top_k: int = 5) -> list[KnowledgeSnippet]:
        terms = set(_WORD.findall(query.lower()))
        if not terms:
            return []
        scored = []
        for source, content in self.documents.items():
            words = set(_WORD.findall(content.lower()))
            overlap = len(terms & words)
            if overlap:
                scored.append(KnowledgeSnippet(content=content, source=source, score=overlap / len(terms)))
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored[:top_k]
