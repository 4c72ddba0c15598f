"""
Consolidation Engine - duplicate detection and merge

Architecture:
1. Candidate pairs: active entities of one owner whose embeddings have
   cosine similarity >= threshold (0.85), strongest first
2. Keeper selection: keeper_score() below, ties go to the lower id
3. Merge (force mode only): the keeper absorbs the loser's names, summary,
   counts, context, facts and edges; the loser is archived with
   superseded_by pointing at the keeper. The keeper write and the loser's
   archival are a single repository unit (one transaction on PostgreSQL)
4. A CONSOLIDATE memory operation records old/new content for review

Preview mode mutates nothing. Every pair is its own unit: a pair whose
member was merged earlier in the run (or by a concurrent run) raises
ConsolidationConflict and is skipped; other failures are collected.
Running twice after a force pass finds nothing to merge because losers
are no longer active.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from memory_core.errors import ConsolidationConflict
from memory_core.models.entity import Entity, EntityStatus, TIER_RANK, clamp_score
from memory_core.models.fact import Fact, InvalidationReason
from memory_core.models.operations import MemoryOperation
from memory_core.repositories.base import MemoryStore
from memory_core.utils.datetime_utils import utc_now, years_between
from memory_core.utils.vectors import similarity_matrix

logger = logging.getLogger(__name__)

# Keeper score weights
IMPORTANCE_WEIGHT = 1.0
MENTION_WEIGHT = 0.01
AGE_YEARS_WEIGHT = 1.0
MISSING_IMPORTANCE = 0.5

CONTEXT_NOTES_CAP = 10

PREVIEW = 'preview'
FORCE = 'force'


def keeper_score(entity: Entity, now: datetime) -> float:
    """
    importance * 1.0 + mention_count * 0.01 + age_in_years * 1.0

    A missing importance score counts as 0.5.
    """
    importance = entity.importance_score if entity.importance_score is not None else MISSING_IMPORTANCE
    return (
        importance * IMPORTANCE_WEIGHT
        + (entity.mention_count or 0) * MENTION_WEIGHT
        + years_between(entity.created_at, now) * AGE_YEARS_WEIGHT
    )


def select_keeper(a: Entity, b: Entity, now: datetime) -> Tuple[Entity, Entity]:
    """Return (keeper, loser). Equal scores: lexicographically lower id wins."""
    score_a, score_b = keeper_score(a, now), keeper_score(b, now)
    if score_a > score_b or (score_a == score_b and a.id < b.id):
        return a, b
    return b, a


def merge_summaries(keeper: Optional[str], loser: Optional[str]) -> Optional[str]:
    """Combine two summaries without repeating sentences"""
    parts: List[str] = []
    seen = set()
    for text in (keeper, loser):
        if not text:
            continue
        for sentence in (s.strip() for s in text.replace('\n', ' ').split('. ')):
            sentence = sentence.rstrip('.').strip()
            if sentence and sentence.lower() not in seen:
                seen.add(sentence.lower())
                parts.append(sentence)
    if not parts:
        return None
    return '. '.join(parts) + '.'


@dataclass
class MergeCandidate:
    entity_a_id: str
    entity_b_id: str
    entity_a_name: str
    entity_b_name: str
    similarity: float
    keeper_id: str
    loser_id: str


@dataclass
class ConsolidationReport:
    mode: str
    threshold: float
    candidates: List[MergeCandidate] = field(default_factory=list)
    merged: List[Tuple[str, str]] = field(default_factory=list)  # (keeper_id, loser_id)
    conflicts: List[Tuple[str, str]] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def counts(self) -> Dict[str, int]:
        return {
            'candidates': len(self.candidates),
            'merged': len(self.merged),
            'conflicts': len(self.conflicts),
            'failed': len(self.failures),
        }


class ConsolidationEngine:

    def __init__(
        self,
        store: MemoryStore,
        clock: Callable[[], datetime] = utc_now,
        threshold: float = 0.85,
        context_notes_cap: int = CONTEXT_NOTES_CAP,
    ):
        self.store = store
        self.clock = clock
        self.threshold = threshold
        self.context_notes_cap = context_notes_cap

    async def find_candidates(self, owner_id: str, threshold: Optional[float] = None) -> List[MergeCandidate]:
        """Pairs of active, embedded entities at or above the threshold, strongest first"""
        threshold = self.threshold if threshold is None else threshold
        now = self.clock()

        entities = [e for e in await self.store.entities.list(owner_id) if e.embedding]
        if len(entities) < 2:
            return []

        # Group by dimension so mixed embedding models never compare
        by_dim: Dict[int, List[Entity]] = {}
        for entity in entities:
            by_dim.setdefault(len(entity.embedding), []).append(entity)

        candidates = []
        for group in by_dim.values():
            if len(group) < 2:
                continue
            sims = similarity_matrix([e.embedding for e in group])
            for i in range(len(group)):
                for j in range(i + 1, len(group)):
                    similarity = float(sims[i, j])
                    if similarity < threshold:
                        continue
                    keeper, loser = select_keeper(group[i], group[j], now)
                    candidates.append(MergeCandidate(
                        entity_a_id=group[i].id,
                        entity_b_id=group[j].id,
                        entity_a_name=group[i].name,
                        entity_b_name=group[j].name,
                        similarity=round(similarity, 6),
                        keeper_id=keeper.id,
                        loser_id=loser.id,
                    ))

        candidates.sort(key=lambda c: (-c.similarity, c.keeper_id, c.loser_id))
        return candidates

    async def consolidate(
        self, owner_id: str, threshold: Optional[float] = None, mode: str = PREVIEW
    ) -> ConsolidationReport:
        """
        Find (and in force mode, merge) duplicate entities.

        Args:
            owner_id: Owner scope
            threshold: Similarity threshold (default from construction, 0.85)
            mode: 'preview' returns candidates only; 'force' merges them

        Returns:
            ConsolidationReport
        """
        if mode not in (PREVIEW, FORCE):
            raise ValueError(f"Unknown consolidation mode: {mode}")

        threshold = self.threshold if threshold is None else threshold
        report = ConsolidationReport(mode=mode, threshold=threshold)
        report.candidates = await self.find_candidates(owner_id, threshold)

        if mode == PREVIEW:
            logger.info(f"🔍 Consolidation preview for {owner_id}: {len(report.candidates)} candidate pairs")
            return report

        for candidate in report.candidates:
            pair = (candidate.keeper_id, candidate.loser_id)
            try:
                await self.merge(owner_id, candidate.keeper_id, candidate.loser_id, candidate.similarity)
                report.merged.append(pair)
            except ConsolidationConflict as e:
                logger.info(f"⏭️  Skipping pair {pair}: {e}")
                report.conflicts.append(pair)
            except Exception as e:
                logger.error(f"❌ Merge {pair} failed: {e}", exc_info=True)
                report.failures[f"{pair[0]}:{pair[1]}"] = f"{type(e).__name__}: {e}"

        logger.info(f"🔀 Consolidation for {owner_id}: {report.counts}")
        return report

    # =========================================================================
    # MERGE
    # =========================================================================

    async def merge(self, owner_id: str, keeper_id: str, loser_id: str, similarity: float = 1.0) -> Entity:
        """
        Fold `loser` into `keeper`.

        Raises:
            ConsolidationConflict: either entity is missing or no longer active
        """
        keeper = await self.store.entities.get(owner_id, keeper_id)
        loser = await self.store.entities.get(owner_id, loser_id)
        for entity_id, entity in ((keeper_id, keeper), (loser_id, loser)):
            if entity is None or entity.status != EntityStatus.ACTIVE:
                raise ConsolidationConflict(entity_id)

        now = self.clock()
        old_content = keeper.summary

        await self._fold_facts(owner_id, keeper, loser, now)
        await self._fold_edges(owner_id, keeper, loser, now)

        keeper.add_alias(loser.name)
        for alias in loser.aliases:
            keeper.add_alias(alias)
        keeper.summary = merge_summaries(keeper.summary, loser.summary)
        keeper.mention_count = keeper.mention_count + loser.mention_count
        keeper.access_count = keeper.access_count + loser.access_count
        for note in loser.context_notes:
            keeper.add_context_note(note, cap=self.context_notes_cap)
        keeper.importance_score = clamp_score(max(keeper.importance_score, loser.importance_score))
        if TIER_RANK[loser.importance_tier] > TIER_RANK[keeper.importance_tier]:
            keeper.importance_tier = loser.importance_tier
        if not keeper.relationship and loser.relationship:
            keeper.relationship = loser.relationship
        keeper.last_mentioned_at = max(
            (t for t in (keeper.last_mentioned_at, loser.last_mentioned_at) if t is not None),
            default=None,
        )
        keeper.version += 1
        keeper.updated_at = now

        # ConsolidationConflict here means neither row was written
        keeper = await self.store.entities.merge_entities(keeper, loser.id, now)

        await self.store.journal.record_operation(MemoryOperation(
            id='',
            owner_id=owner_id,
            operation='CONSOLIDATE',
            entity_id=keeper.id,
            merged_entity_ids=[loser.id],
            old_content=old_content,
            new_content=keeper.summary,
            reasoning=(
                f"Merged {loser.name} ({loser.id}) into {keeper.name} ({keeper.id}), "
                f"similarity {similarity:.3f}"
            ),
            created_at=now,
        ))

        logger.info(f"🔀 Merged {loser.name} → {keeper.name} (v{keeper.version})")
        return keeper

    async def _fold_facts(self, owner_id: str, keeper: Entity, loser: Entity, now: datetime):
        """
        Re-point the loser's facts to the keeper.

        Conflicting open facts are resolved first so the single-open-fact
        invariant holds after re-pointing.
        """
        keeper_open = await self.store.facts.open_facts(owner_id, keeper.id)
        loser_open = await self.store.facts.open_facts(owner_id, loser.id)

        for theirs in loser_open:
            same = next(
                (f for f in keeper_open if f.predicate == theirs.predicate and f.same_object(theirs.object)),
                None,
            )
            if same is not None:
                same.mention_count += theirs.mention_count
                same.confidence = max(same.confidence, theirs.confidence)
                await self.store.facts.update(same)
                self._close(theirs, now, invalidated_by=same.id)
                await self.store.facts.update(theirs)
                continue

            if not theirs.single_valued:
                continue

            ours = next((f for f in keeper_open if f.predicate == theirs.predicate and f.single_valued), None)
            if ours is None:
                continue

            older, newer = sorted((ours, theirs), key=lambda f: (f.created_at or now, f.id))
            self._close(older, now, invalidated_by=newer.id)
            newer.previous_version_id = older.id
            newer.version = max(newer.version, older.version + 1)
            await self.store.facts.update(older)
            await self.store.facts.update(newer)
            if older in keeper_open:
                keeper_open.remove(older)

        moved = await self.store.facts.reassign_entity(owner_id, loser.id, keeper.id)
        logger.debug(f"Re-pointed {moved} facts from {loser.id} to {keeper.id}")

    @staticmethod
    def _close(fact: Fact, now: datetime, invalidated_by: str):
        fact.valid_to = now
        fact.invalidated_at = now
        fact.invalidated_by = invalidated_by
        fact.invalidation_reason = InvalidationReason.MERGED

    async def _fold_edges(self, owner_id: str, keeper: Entity, loser: Entity, now: datetime):
        """Re-point edges; self-loops are deactivated, duplicates keep the max strength"""
        for edge in await self.store.relationships.list_for_entity(owner_id, loser.id, active_only=False):
            source = keeper.id if edge.source_entity_id == loser.id else edge.source_entity_id
            target = keeper.id if edge.target_entity_id == loser.id else edge.target_entity_id

            if source == target:
                edge.active = False
                edge.ended_at = edge.ended_at or now
                edge.updated_at = now
                await self.store.relationships.save(edge)
                continue

            existing = await self.store.relationships.find(owner_id, source, target, edge.relationship_type)
            if existing is not None and existing.id != edge.id:
                existing.strength = max(existing.strength, edge.strength)
                existing.confidence = max(existing.confidence, edge.confidence)
                existing.active = existing.active or edge.active
                existing.updated_at = now
                await self.store.relationships.save(existing)
                edge.active = False
                edge.ended_at = edge.ended_at or now
                edge.updated_at = now
                await self.store.relationships.save(edge)
                continue

            edge.source_entity_id = source
            edge.target_entity_id = target
            edge.updated_at = now
            await self.store.relationships.save(edge)
