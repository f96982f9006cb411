"""
Retrieval index for durable facts.

The Memory Curator writes Facts here after a commit; the Context Broker reads
bounded snippets back when it builds the next ContextPack.

Key rules:
- Facts are never edited or deleted
- A fact whose ``supersedes`` names another fact hides that fact from
  search and ``facts_for``
- Every snippet carries the citation event ids of its fact
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence

from .schemas import Fact, RetrievalSnippet

# Words too common to count as keyword hits.
_STOPWORDS = frozenset(
    {"the", "and", "for", "with", "that", "this", "you", "your", "into", "from", "what", "are"}
)


def _terms(text: str) -> List[str]:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_" else " " for ch in text.lower())
    return [term for term in cleaned.split() if len(term) > 2 and term not in _STOPWORDS]


class RetrievalIndex(ABC):
    """Abstract base class for fact retrieval backends."""

    async def initialize(self) -> None:
        """Set up the backend. No-op by default."""

    async def close(self) -> None:
        """Release backend resources. No-op by default."""

    @abstractmethod
    async def search(
        self,
        tags: Sequence[str],
        query: str,
        k: int,
        *,
        session_id: Optional[str] = None,
    ) -> List[RetrievalSnippet]:
        """
        Return up to ``k`` snippets relevant to ``tags`` and ``query``.

        Args:
            tags: Entity ids, scene ids or labels to match against fact tags
            query: Free text (usually the player's input)
            k: Maximum snippets to return
            session_id: Restrict results to one session's facts

        Returns:
            Snippets ordered by descending score
        """

    @abstractmethod
    async def upsert(self, fact: Fact) -> None:
        """Store a fact. Storing the same fact_id twice is a no-op."""

    @abstractmethod
    async def facts_for(
        self,
        entity_refs: Sequence[str],
        quest_id: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
    ) -> List[Fact]:
        """Return live (not superseded) facts touching any entity or the quest.

        With neither entities nor a quest, every live fact is returned.
        """

    @abstractmethod
    async def facts_by_subject(
        self, subject_key: str, *, session_id: Optional[str] = None
    ) -> List[Fact]:
        """Return live facts with ``subject_key``, oldest first."""


class InMemoryRetrievalIndex(RetrievalIndex):
    """Keyword + recency ranking over an in-process list of facts.

    Scoring per fact:
    - +2.0 for each query term found in the statement
    - +1.0 for each requested tag found in the fact's tags or entity refs
    - facts with no hits are dropped (unless nothing was asked for, in which
      case the most recent facts are returned)
    - a recency boost of 1 / (1 + age) where age counts newer facts
    """

    def __init__(self):
        self.facts: List[Fact] = []
        self._by_id: Dict[str, Fact] = {}
        self._superseded: Dict[str, str] = {}

    async def upsert(self, fact: Fact) -> None:
        if fact.fact_id in self._by_id:
            return
        self.facts.append(fact)
        self._by_id[fact.fact_id] = fact
        if fact.supersedes:
            self._superseded[fact.supersedes] = fact.fact_id

    def _live(self, session_id: Optional[str]) -> List[Fact]:
        return [
            fact
            for fact in self.facts
            if fact.fact_id not in self._superseded
            and (session_id is None or fact.session_id == session_id)
        ]

    def superseded_by(self, fact_id: str) -> Optional[str]:
        return self._superseded.get(fact_id)

    async def search(
        self,
        tags: Sequence[str],
        query: str,
        k: int,
        *,
        session_id: Optional[str] = None,
    ) -> List[RetrievalSnippet]:
        if k <= 0:
            return []

        candidates = self._live(session_id)
        if not candidates:
            return []

        terms = _terms(query)
        wanted_tags = {tag.lower() for tag in tags if tag}
        newest_first = list(reversed(candidates))

        scored: List[tuple[float, int, Fact]] = []
        for age, fact in enumerate(newest_first):
            recency = 1.0 / (1.0 + age)
            if not terms and not wanted_tags:
                scored.append((recency, age, fact))
                continue

            statement = fact.statement.lower()
            labels = {label.lower() for label in [*fact.tags, *fact.entity_refs]}
            score = 0.0
            for term in terms:
                if term in statement:
                    score += 2.0
            score += 1.0 * len(wanted_tags & labels)
            if score <= 0.0:
                continue
            scored.append((score + recency, age, fact))

        # Ties go to the newer fact.
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [
            RetrievalSnippet(
                text=fact.statement,
                citation_ids=list(fact.citations),
                score=round(score, 4),
                fact_id=fact.fact_id,
            )
            for score, _, fact in scored[:k]
        ]

    async def facts_for(
        self,
        entity_refs: Sequence[str],
        quest_id: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
    ) -> List[Fact]:
        refs = set(entity_refs)
        if not refs and not quest_id:
            return self._live(session_id)
        return [
            fact
            for fact in self._live(session_id)
            if refs.intersection(fact.entity_refs) or (quest_id and fact.quest_id == quest_id)
        ]

    async def facts_by_subject(
        self, subject_key: str, *, session_id: Optional[str] = None
    ) -> List[Fact]:
        return [fact for fact in self._live(session_id) if fact.subject_key == subject_key]

    def all_facts(self, include_superseded: bool = False) -> Iterable[Fact]:
        if include_superseded:
            return list(self.facts)
        return self._live(None)
