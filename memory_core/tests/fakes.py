"""
Test doubles: frozen clock, fake delegates, entity factory
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from memory_core.errors import VersioningRace
from memory_core.models.entity import Entity
from memory_core.repositories.base import MemoryStore
from memory_core.repositories.memory import InMemoryFactRepository


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEmbedder:
    """
    Returns the vector registered for the first key contained in the text
    (case-insensitive), or a zero vector.
    """

    def __init__(self, vectors: Optional[Dict[str, Sequence[float]]] = None, dim: int = 3):
        self.vectors = {k.lower(): list(v) for k, v in (vectors or {}).items()}
        self.dim = dim
        self.calls: List[List[str]] = []
        self.fail = False

    def register(self, key: str, vector: Sequence[float]):
        self.vectors[key.lower()] = list(vector)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        result = []
        for text in texts:
            lowered = text.lower()
            match = next((v for k, v in self.vectors.items() if k in lowered), None)
            result.append(list(match) if match else [0.0] * self.dim)
        return result


class FakeClassifier:
    """Returns a canned response per entity name (default: unparseable)"""

    def __init__(self, responses: Optional[Dict[str, str]] = None):
        self.responses = dict(responses or {})
        self.calls: List[str] = []
        self.fail = False

    async def classify(self, entity: Entity) -> str:
        self.calls.append(entity.name)
        if self.fail:
            raise RuntimeError("classifier timeout")
        return self.responses.get(entity.name, "not json at all")


class FakeInferenceGenerator:

    def __init__(self, items: Optional[List[Dict[str, Any]]] = None):
        self.items = list(items or [])
        self.calls: List[Tuple[List[str], List[Tuple[str, str, str]]]] = []

    async def generate(self, entities, relationships):
        self.calls.append(([e.name for e in entities], list(relationships)))
        return list(self.items)


async def add_entity(store: MemoryStore, owner_id: str = 'owner_1', name: str = 'Marcus', **fields) -> Entity:
    """Create an entity directly in the store"""
    return await store.entities.create(Entity(id=fields.pop('id', ''), owner_id=owner_id, name=name, **fields))


class RacyFactRepository(InMemoryFactRepository):
    """Loses the first `races` inserts to an imaginary concurrent writer"""

    def __init__(self, races: int):
        super().__init__()
        self.races = races

    async def insert(self, fact, supersede=None):
        if self.races > 0:
            self.races -= 1
            raise VersioningRace(fact.entity_id, fact.predicate)
        return await super().insert(fact, supersede=supersede)
