"""
Query Router

Pattern-based intent detection over the raw query text, dispatching to
specialized read paths. Anything unmatched is a standard ranked search.

Detection order matters (first match wins):
    self_summary -> entity_summary -> relationship_query -> temporal ->
    historical -> negation -> sentiment_trend -> decisions -> goals

Every handler only returns entities that pass the caller's SearchFilters
(sensitivity ceiling included). Handlers return plain dicts; nothing here
formats text for display.
"""
import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from rapidfuzz import fuzz, process, utils as fuzz_utils

from memory_core.models.entity import Entity, EntityStatus, EntityType, MemoryType
from memory_core.repositories.base import ALL_STATUSES, MemoryStore
from memory_core.services.facts import FactService
from memory_core.services.graph import RelationshipGraph
from memory_core.services.retrieval import (
    RetrievalRanker,
    SearchFilters,
    SearchResponse,
    WeightProfile,
    DEFAULT_PROFILE,
    passes_filters,
)
from memory_core.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


class QueryIntent(str, Enum):
    SELF_SUMMARY = "self_summary"
    ENTITY_SUMMARY = "entity_summary"
    RELATIONSHIP_QUERY = "relationship_query"
    TEMPORAL = "temporal"
    HISTORICAL = "historical"
    NEGATION = "negation"
    SENTIMENT_TREND = "sentiment_trend"
    DECISIONS = "decisions"
    GOALS = "goals"
    STANDARD = "standard"


SELF_SUMMARY_PHRASES = (
    'what do you know about me',
    'what have you learned about me',
    'summarize what you know',
    'tell me about myself',
    'what do you remember about me',
)
ENTITY_SUMMARY_PATTERN = re.compile(r"what do you (?:know|remember) about (\w+(?:\s+\w+)?)")
RELATIONSHIP_PHRASES = ('who knows', 'relationship between')
TEMPORAL_PHRASES = ('yesterday', 'last week', 'last month', 'recently', 'this week')
HISTORICAL_PHRASES = ('used to', 'previously', 'in the past', 'history of')
NEGATION_PATTERN = re.compile(r"\b(?:not|don't|except|excluding|without)\s+(\w+)")
SENTIMENT_PHRASES = ('how do i feel about', 'sentiment', 'getting better', 'getting worse')
DECISION_PHRASES = ('decisions i made', 'what did i decide', 'choices i made')
GOAL_PHRASES = ('my goals', 'what am i working toward', 'progress on')

# Graph traversal bounds for relationship queries
TRAVERSAL_MAX_DEPTH = 2
TRAVERSAL_MIN_STRENGTH = 0.2

SENTIMENT_WINDOW_DAYS = 14
SENTIMENT_CHANGE_PERCENT = 10.0

FUZZY_MATCH_CUTOFF = 75


@dataclass(frozen=True)
class DetectedIntent:
    intent: QueryIntent
    entity: Optional[str] = None  # entity_summary target
    exclude: Optional[str] = None  # negation term
    timeframe: Optional[str] = None  # yesterday | week | month | recently


def _timeframe_key(normalized: str) -> str:
    if 'yesterday' in normalized:
        return 'yesterday'
    if 'last week' in normalized or 'this week' in normalized:
        return 'week'
    if 'last month' in normalized:
        return 'month'
    if 'recently' in normalized:
        return 'recently'
    return 'week'


def timeframe_window(key: str, now: datetime) -> Tuple[datetime, datetime]:
    """Resolve a timeframe key into a [start, end] window ending now"""
    if key == 'yesterday':
        start = (now - timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start + timedelta(days=1) - timedelta(microseconds=1)
    if key == 'month':
        return now - timedelta(days=30), now
    if key == 'recently':
        return now - timedelta(days=3), now
    return now - timedelta(days=7), now


def detect_intent(query: str) -> DetectedIntent:
    normalized = (query or '').lower().strip()

    if any(p in normalized for p in SELF_SUMMARY_PHRASES):
        return DetectedIntent(QueryIntent.SELF_SUMMARY)

    match = ENTITY_SUMMARY_PATTERN.search(normalized)
    if match:
        return DetectedIntent(QueryIntent.ENTITY_SUMMARY, entity=match.group(1))

    if any(p in normalized for p in RELATIONSHIP_PHRASES) or (
        'how is' in normalized and 'connected to' in normalized
    ):
        return DetectedIntent(QueryIntent.RELATIONSHIP_QUERY)

    if any(p in normalized for p in TEMPORAL_PHRASES):
        return DetectedIntent(QueryIntent.TEMPORAL, timeframe=_timeframe_key(normalized))

    if any(p in normalized for p in HISTORICAL_PHRASES) or (
        'how has' in normalized and 'changed' in normalized
    ):
        return DetectedIntent(QueryIntent.HISTORICAL)

    match = NEGATION_PATTERN.search(normalized)
    if match:
        return DetectedIntent(QueryIntent.NEGATION, exclude=match.group(1))

    if any(p in normalized for p in SENTIMENT_PHRASES):
        return DetectedIntent(QueryIntent.SENTIMENT_TREND)

    if any(p in normalized for p in DECISION_PHRASES):
        return DetectedIntent(QueryIntent.DECISIONS)

    if any(p in normalized for p in GOAL_PHRASES):
        return DetectedIntent(QueryIntent.GOALS)

    return DetectedIntent(QueryIntent.STANDARD)


def entity_brief(entity: Entity) -> Dict[str, Any]:
    return {
        'id': entity.id,
        'name': entity.name,
        'entity_type': entity.entity_type.value,
        'memory_type': entity.memory_type.value,
        'summary': entity.summary,
        'relationship': entity.relationship,
        'importance_tier': entity.importance_tier.value,
        'importance_score': entity.importance_score,
        'status': entity.status.value,
        'is_historical': entity.is_historical,
        'mention_count': entity.mention_count,
        'last_mentioned_at': entity.last_mentioned_at.isoformat() if entity.last_mentioned_at else None,
        'updated_at': entity.updated_at.isoformat() if entity.updated_at else None,
    }


def classify_trend(current_avg: Optional[float], previous_avg: Optional[float]) -> Tuple[str, float]:
    """
    improving / declining when the average moved more than 10% relative to
    the previous window, stable otherwise (including no previous data)
    """
    if current_avg is None or previous_avg is None or previous_avg == 0:
        return 'stable', 0.0
    change = (current_avg - previous_avg) / abs(previous_avg) * 100
    if change > SENTIMENT_CHANGE_PERCENT:
        return 'improving', change
    if change < -SENTIMENT_CHANGE_PERCENT:
        return 'declining', change
    return 'stable', change


def _search_payload(response: SearchResponse) -> List[Dict[str, Any]]:
    return [
        dict(entity_brief(r.entity), score=round(r.score, 6), similarity=r.similarity)
        for r in response.results
    ]


class QueryRouter:

    def __init__(
        self,
        store: MemoryStore,
        ranker: RetrievalRanker,
        graph: RelationshipGraph,
        facts: FactService,
        clock: Callable[[], datetime] = utc_now,
        default_filters: SearchFilters = SearchFilters(),
    ):
        self.store = store
        self.ranker = ranker
        self.graph = graph
        self.facts = facts
        self.clock = clock
        self.default_filters = default_filters

    async def route(
        self,
        owner_id: str,
        query: str,
        filters: Optional[SearchFilters] = None,
        profile: WeightProfile = DEFAULT_PROFILE,
    ) -> Dict[str, Any]:
        """
        Detect the intent of `query` and run the matching handler.

        Returns:
            Dict with at least {'type': intent value}
        """
        detected = detect_intent(query)
        filters = filters or self.default_filters
        logger.debug(f"Query intent for {owner_id}: {detected.intent.value}")

        if detected.intent == QueryIntent.SELF_SUMMARY:
            return await self.self_summary(owner_id, filters)
        if detected.intent == QueryIntent.ENTITY_SUMMARY:
            return await self.entity_summary(owner_id, detected.entity, filters)
        if detected.intent == QueryIntent.RELATIONSHIP_QUERY:
            return await self.relationship_query(owner_id, query, filters)
        if detected.intent == QueryIntent.TEMPORAL:
            return await self.temporal(owner_id, detected.timeframe, filters)
        if detected.intent == QueryIntent.HISTORICAL:
            return await self.historical(owner_id, query, filters)
        if detected.intent == QueryIntent.NEGATION:
            return await self.negation(owner_id, query, detected.exclude, filters)
        if detected.intent == QueryIntent.SENTIMENT_TREND:
            return await self.sentiment_trends(owner_id, filters)
        if detected.intent == QueryIntent.DECISIONS:
            return await self.decisions(owner_id, filters)
        if detected.intent == QueryIntent.GOALS:
            return await self.goals(owner_id, filters)
        return await self.standard(owner_id, query, filters, profile)

    # =========================================================================
    # HANDLERS
    # =========================================================================

    def _visible(
        self, entities: List[Entity], filters: Optional[SearchFilters], keep_historical: bool = False
    ) -> List[Entity]:
        """Entities passing `filters`; keep_historical also admits archived and historical ones"""
        filters = filters or self.default_filters
        if keep_historical:
            filters = replace(filters, include_historical=True)
        now = self.clock()
        return [e for e in entities if passes_filters(e, filters, now)]

    async def self_summary(self, owner_id: str, filters: Optional[SearchFilters] = None) -> Dict[str, Any]:
        entities = self._visible(await self.store.entities.list(owner_id), filters)[:200]
        if not entities:
            return {'type': QueryIntent.SELF_SUMMARY.value, 'found': False}

        by_type: Dict[str, List[Entity]] = {}
        for entity in entities:
            by_type.setdefault(entity.memory_type.value, []).append(entity)

        top = [e for e in entities if e.memory_type == MemoryType.ENTITY][:10]
        goals = [g for g in by_type.get(MemoryType.GOAL.value, []) if not g.is_historical]
        return {
            'type': QueryIntent.SELF_SUMMARY.value,
            'found': True,
            'top_entities': [entity_brief(e) for e in top],
            'preferences': [entity_brief(e) for e in by_type.get(MemoryType.PREFERENCE.value, [])],
            'goals': [entity_brief(e) for e in goals],
            'decisions': [entity_brief(e) for e in by_type.get(MemoryType.DECISION.value, [])[:5]],
            'stats': {
                'total_memories': len(entities),
                'by_type': {k: len(v) for k, v in by_type.items()},
                'top_people': [e.name for e in top if e.entity_type == EntityType.PERSON][:5],
                'active_goals': len(goals),
            },
        }

    async def find_entity(
        self, owner_id: str, name: str, filters: Optional[SearchFilters] = None
    ) -> Optional[Entity]:
        """
        Best fuzzy match over names and aliases of entities the filters
        allow; current entities first, then archived and historical ones
        (archived names resolve to whoever superseded them).
        """
        for statuses in ((EntityStatus.ACTIVE,), ALL_STATUSES):
            second_pass = statuses == ALL_STATUSES
            entities = self._visible(
                await self.store.entities.list(owner_id, statuses=statuses), filters, keep_historical=second_pass,
            )
            choices: List[str] = []
            owners: List[Entity] = []
            for entity in entities:
                for label in entity.all_names:
                    choices.append(label)
                    owners.append(entity)
            if not choices:
                continue
            match = process.extractOne(
                name, choices, scorer=fuzz.WRatio, processor=fuzz_utils.default_process,
                score_cutoff=FUZZY_MATCH_CUTOFF,
            )
            if match is not None:
                entity = owners[match[2]]
                if entity.superseded_by:
                    keeper = await self.facts.resolve_entity(owner_id, entity.id)
                    return keeper if self._visible([keeper], filters) else None
                return entity
        return None

    async def sentiment_trend(self, owner_id: str, entity_id: str) -> Dict[str, Any]:
        now = self.clock()
        window = timedelta(days=SENTIMENT_WINDOW_DAYS)
        current = await self.store.journal.list_sentiment(owner_id, entity_id, since=now - window)
        previous = await self.store.journal.list_sentiment(owner_id, entity_id, since=now - 2 * window, until=now - window)

        current_avg = sum(r.sentiment for r in current) / len(current) if current else None
        previous_avg = sum(r.sentiment for r in previous) / len(previous) if previous else None
        trend, change = classify_trend(current_avg, previous_avg)
        return {
            'trend': trend,
            'change_percent': round(change, 2),
            'current_avg': current_avg,
            'previous_avg': previous_avg,
            'readings': len(current) + len(previous),
        }

    async def entity_summary(
        self, owner_id: str, name: str, filters: Optional[SearchFilters] = None
    ) -> Dict[str, Any]:
        entity = await self.find_entity(owner_id, name or '', filters)
        if entity is None:
            return {'type': QueryIntent.ENTITY_SUMMARY.value, 'found': False, 'entity': name}

        superseded = self._visible(
            await self.store.entities.list_superseded_by(owner_id, entity.id), filters, keep_historical=True,
        )
        edges = await self.graph.get_relationships(owner_id, entity.id)
        neighbors = {e.id: e for e in self._visible(
            await self.store.entities.get_many(owner_id, [edge.other_end(entity.id) for edge in edges]),
            filters, keep_historical=True,
        )}
        edges = [edge for edge in edges if edge.other_end(entity.id) in neighbors]

        facts = await self.facts.get_current_facts(owner_id, entity.id)
        linked = [f.object_entity_id for f in facts if f.object_entity_id]
        if linked:
            shown = {e.id for e in self._visible(
                await self.store.entities.get_many(owner_id, linked), filters, keep_historical=True,
            )}
            facts = [f for f in facts if not f.object_entity_id or f.object_entity_id in shown]

        return {
            'type': QueryIntent.ENTITY_SUMMARY.value,
            'found': True,
            'entity': entity_brief(entity),
            'history': [
                {'id': h.id, 'name': h.name, 'summary': h.summary,
                 'date': h.updated_at.isoformat() if h.updated_at else None}
                for h in superseded
            ],
            'facts': [
                {'predicate': f.predicate, 'object': f.object, 'confidence': f.confidence, 'version': f.version}
                for f in facts
            ],
            'relationships': [
                {
                    'entity': neighbors[edge.other_end(entity.id)].name,
                    'relationship_type': edge.relationship_type,
                    'strength': edge.strength,
                    'started_at': edge.started_at.isoformat() if edge.started_at else None,
                }
                for edge in edges
            ],
            'sentiment_trend': await self.sentiment_trend(owner_id, entity.id),
            'recent_context': entity.context_notes[-5:],
        }

    async def relationship_query(
        self, owner_id: str, query: str, filters: Optional[SearchFilters] = None
    ) -> Dict[str, Any]:
        normalized = query.lower()
        mentioned = [
            e for e in self._visible(await self.store.entities.list(owner_id), filters)
            if any(re.search(r'\b' + re.escape(n.lower()) + r'\b', normalized) for n in e.all_names)
        ]
        if not mentioned:
            return {'type': QueryIntent.RELATIONSHIP_QUERY.value, 'found': False}

        primary = mentioned[0]
        nodes = await self.graph.traverse(
            owner_id, primary.id, max_depth=TRAVERSAL_MAX_DEPTH, min_strength=TRAVERSAL_MIN_STRENGTH,
        )
        reached = {e.id: e for e in self._visible(
            await self.store.entities.get_many(owner_id, [n.entity_id for n in nodes]), filters,
        )}
        reached[primary.id] = primary
        # a hidden entity anywhere on the path hides everything reached through it
        nodes = [n for n in nodes if all(p in reached for p in n.path)]
        names = dict((e.id, e.name) for e in reached.values())

        return {
            'type': QueryIntent.RELATIONSHIP_QUERY.value,
            'found': True,
            'primary_entity': primary.name,
            'mentioned': [e.name for e in mentioned],
            'connections': [
                {
                    'entity': names[n.entity_id],
                    'entity_type': reached[n.entity_id].entity_type.value,
                    'path': [names[p] for p in n.path],
                    'relationships': n.relationship_types,
                    'strength': round(n.path_strength, 6),
                    'depth': n.depth,
                }
                for n in nodes
            ],
        }

    async def temporal(
        self, owner_id: str, timeframe: Optional[str], filters: Optional[SearchFilters] = None
    ) -> Dict[str, Any]:
        start, end = timeframe_window(timeframe or 'week', self.clock())
        entities = [
            e for e in self._visible(await self.store.entities.list(owner_id), filters)
            if e.updated_at is not None and start <= e.updated_at <= end
        ]
        entities.sort(key=lambda e: (e.updated_at, e.id), reverse=True)
        entities = entities[:20]
        return {
            'type': QueryIntent.TEMPORAL.value,
            'timeframe': {'key': timeframe, 'start': start.isoformat(), 'end': end.isoformat()},
            'memories': [entity_brief(e) for e in entities],
            'count': len(entities),
        }

    async def historical(self, owner_id: str, query: str, filters: SearchFilters) -> Dict[str, Any]:
        response = await self.ranker.search_text(
            owner_id,
            query,
            SearchFilters(
                memory_types=filters.memory_types,
                include_historical=True,
                exclude_expired=False,
                min_importance=filters.min_importance,
                sensitivity_ceiling=filters.sensitivity_ceiling,
                similarity_threshold=filters.similarity_threshold,
                limit=20,
            ),
        )
        results = _search_payload(response)
        return {
            'type': QueryIntent.HISTORICAL.value,
            'degraded': response.degraded,
            'current': [r for r in results if not r['is_historical'] and r['status'] == EntityStatus.ACTIVE.value],
            'historical': [r for r in results if r['is_historical'] or r['status'] != EntityStatus.ACTIVE.value],
        }

    async def negation(self, owner_id: str, query: str, exclude: str, filters: SearchFilters) -> Dict[str, Any]:
        response = await self.ranker.search_text(owner_id, query, filters, exclude_term=exclude)
        return {
            'type': QueryIntent.NEGATION.value,
            'excluded': exclude,
            'degraded': response.degraded,
            'results': _search_payload(response),
        }

    async def sentiment_trends(self, owner_id: str, filters: Optional[SearchFilters] = None) -> Dict[str, Any]:
        people = [
            e for e in self._visible(await self.store.entities.list(owner_id), filters)
            if e.entity_type == EntityType.PERSON
        ]
        people.sort(key=lambda e: (-e.mention_count, e.id))

        trends = []
        for person in people[:10]:
            trend = await self.sentiment_trend(owner_id, person.id)
            if trend['readings']:
                trends.append(dict(trend, entity=person.name, entity_id=person.id))

        return {
            'type': QueryIntent.SENTIMENT_TREND.value,
            'trends': trends,
            'improving': [t['entity'] for t in trends if t['trend'] == 'improving'],
            'declining': [t['entity'] for t in trends if t['trend'] == 'declining'],
            'stable': [t['entity'] for t in trends if t['trend'] == 'stable'],
        }

    async def decisions(self, owner_id: str, filters: Optional[SearchFilters] = None) -> Dict[str, Any]:
        decisions = self._visible(await self.store.entities.list(owner_id, memory_types=[MemoryType.DECISION]), filters)
        decisions.sort(key=lambda e: (e.created_at is not None, e.created_at, e.id), reverse=True)
        decisions = decisions[:20]
        return {
            'type': QueryIntent.DECISIONS.value,
            'decisions': [entity_brief(d) for d in decisions],
            'total': len(decisions),
        }

    async def goals(self, owner_id: str, filters: Optional[SearchFilters] = None) -> Dict[str, Any]:
        # achieved goals are historical but still listed
        goals = self._visible(
            await self.store.entities.list(owner_id, memory_types=[MemoryType.GOAL]), filters, keep_historical=True,
        )
        active = [g for g in goals if not g.is_historical]
        achieved = [g for g in goals if g.is_historical]
        return {
            'type': QueryIntent.GOALS.value,
            'active': [dict(entity_brief(g), deadline=g.expires_at.isoformat() if g.expires_at else None) for g in active],
            'achieved': [entity_brief(g) for g in achieved],
            'total_active': len(active),
            'total_achieved': len(achieved),
        }

    async def standard(
        self, owner_id: str, query: str, filters: SearchFilters, profile: WeightProfile = DEFAULT_PROFILE
    ) -> Dict[str, Any]:
        response = await self.ranker.search_text(owner_id, query, filters, profile)
        results = _search_payload(response)
        return {
            'type': QueryIntent.STANDARD.value,
            'query': query,
            'degraded': response.degraded,
            'results': results,
            'count': len(results),
        }
