from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from .errors import RecordNotFound
from .models import ApprovedArtifact, PainRecord, Project, RankingRecord, SegmentRecord
from .store import ArtifactStore, RecordScope

logger = logging.getLogger(__name__)


def _parse(model: type[Any], payload: dict[str, Any], where: str) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"stored {where} record is invalid: {exc}") from exc


class EntityRepository:
    """Typed access to projects and the segment, pain and ranking records.

    Segment and pain records are materialized from approved artifacts; the
    fan-out steps take their scope keys from here.
    """

    def __init__(self, store: ArtifactStore) -> None:
        self.store = store

    # -- projects ------------------------------------------------------------

    def create_project(self, project: Project) -> Project:
        self.store.insert(RecordScope(project.project_id, "projects"), project.model_dump(mode="json"))
        return project

    def get_project(self, project_id: str) -> Project:
        return _parse(Project, self.store.get(RecordScope(project_id, "projects")), "project")

    def save_project(self, project: Project) -> Project:
        project.updated_at = datetime.now(UTC)
        self.store.update(RecordScope(project.project_id, "projects"), project.model_dump(mode="json"))
        return project

    # -- segments ------------------------------------------------------------

    def list_segments(self, project_id: str) -> list[SegmentRecord]:
        records = [_parse(SegmentRecord, item, "segment") for item in self.store.list(project_id, "segments", "")]
        return sorted(records, key=lambda record: (record.segment_index, record.segment_id))

    def get_segment(self, project_id: str, segment_id: str) -> SegmentRecord:
        return _parse(SegmentRecord, self.store.get(RecordScope(project_id, "segments", scope_key=segment_id)), "segment")

    def segment_exists(self, project_id: str, segment_id: str) -> bool:
        return self.store.exists(RecordScope(project_id, "segments", scope_key=segment_id))

    def replace_segments(self, project_id: str, items: list[dict[str, Any]]) -> list[SegmentRecord]:
        """Swap the project's segment records for *items* under fresh ids.

        Pains of the replaced segments are deleted with them. Their rankings
        are left in place and surface as orphans until reconciliation prunes them.
        """
        removed = self.list_segments(project_id)
        for existing in removed:
            self.store.delete(RecordScope(project_id, "segments", scope_key=existing.segment_id))
            dropped = self.list_pains(project_id, existing.segment_id)
            for pain in dropped:
                self.delete_pain(project_id, pain.pain_id)
            if dropped:
                logger.warning("segment %s replaced; dropped %d of its pains", existing.segment_id, len(dropped))
        created: list[SegmentRecord] = []
        for position, item in enumerate(items, start=1):
            record = SegmentRecord(
                project_id=project_id,
                segment_index=item.get("segment_index", position),
                name=item["name"],
                description=item.get("description", ""),
                sociodemographics=item.get("sociodemographics", ""),
            )
            self.store.insert(RecordScope(project_id, "segments", scope_key=record.segment_id), record.model_dump(mode="json"))
            created.append(record)
        logger.info("materialized %d segments for project %s", len(created), project_id)
        return created

    # -- pains ---------------------------------------------------------------

    def list_pains(self, project_id: str, segment_id: str | None = None) -> list[PainRecord]:
        records = [_parse(PainRecord, item, "pain") for item in self.store.list(project_id, "pains", "")]
        if segment_id is not None:
            records = [record for record in records if record.segment_id == segment_id]
        return sorted(records, key=lambda record: (record.segment_id, record.pain_index, record.pain_id))

    def get_pain(self, project_id: str, pain_id: str) -> PainRecord:
        return _parse(PainRecord, self.store.get(RecordScope(project_id, "pains", scope_key=pain_id)), "pain")

    def pain_exists(self, project_id: str, pain_id: str) -> bool:
        return self.store.exists(RecordScope(project_id, "pains", scope_key=pain_id))

    def delete_pain(self, project_id: str, pain_id: str) -> bool:
        return self.store.delete(RecordScope(project_id, "pains", scope_key=pain_id))

    def replace_pains(self, project_id: str, segment_id: str, items: list[dict[str, Any]]) -> list[PainRecord]:
        for existing in self.list_pains(project_id, segment_id):
            self.delete_pain(project_id, existing.pain_id)
        created: list[PainRecord] = []
        for position, item in enumerate(items, start=1):
            record = PainRecord(
                project_id=project_id,
                segment_id=segment_id,
                pain_index=item.get("pain_index", position),
                name=item["name"],
                description=item.get("description", ""),
                deep_triggers=list(item.get("deep_triggers", [])),
                examples=list(item.get("examples", [])),
            )
            self.store.insert(RecordScope(project_id, "pains", scope_key=record.pain_id), record.model_dump(mode="json"))
            created.append(record)
        logger.info("materialized %d pains for segment %s", len(created), segment_id)
        return created

    # -- rankings ------------------------------------------------------------

    def list_rankings(self, project_id: str, segment_id: str | None = None) -> list[RankingRecord]:
        records = [_parse(RankingRecord, item, "ranking") for item in self.store.list(project_id, "rankings", "")]
        if segment_id is not None:
            records = [record for record in records if record.segment_id == segment_id]
        return sorted(records, key=lambda record: (record.segment_id, -record.impact_score, record.pain_id))

    def get_ranking(self, project_id: str, pain_id: str) -> RankingRecord:
        return _parse(RankingRecord, self.store.get(RecordScope(project_id, "rankings", scope_key=pain_id)), "ranking")

    def upsert_ranking(self, record: RankingRecord) -> None:
        self.store.upsert(RecordScope(record.project_id, "rankings", scope_key=record.pain_id), record.model_dump(mode="json"))

    def delete_ranking(self, project_id: str, pain_id: str) -> bool:
        return self.store.delete(RecordScope(project_id, "rankings", scope_key=pain_id))

    def set_top_pain(self, project_id: str, pain_id: str, is_top: bool) -> RankingRecord:
        """Flip one pain's top-set membership outside the draft/approve cycle.

        Pains that were never ranked get a fresh ranking record.

        Raises:
            RecordNotFound: If the pain does not exist.
        """
        pain = self.get_pain(project_id, pain_id)
        try:
            ranking = self.get_ranking(project_id, pain_id)
        except RecordNotFound:
            ranking = RankingRecord(project_id=project_id, segment_id=pain.segment_id, pain_id=pain_id)
        ranking.is_top_pain = is_top
        ranking.updated_at = datetime.now(UTC)
        self.upsert_ranking(ranking)
        logger.info("pain %s top-set membership set to %s", pain_id, is_top)
        return ranking

    def top_pains(self, project_id: str) -> tuple[list[PainRecord], list[str]]:
        """Return ``(top pains that exist, top-ranked pain ids that are orphaned)``.

        A top-ranked pain is orphaned when its pain record or its segment
        record is gone.
        """
        segment_ids = {segment.segment_id for segment in self.list_segments(project_id)}
        present: list[PainRecord] = []
        orphans: list[str] = []
        for ranking in self.list_rankings(project_id):
            if not ranking.is_top_pain:
                continue
            try:
                pain = self.get_pain(project_id, ranking.pain_id)
            except RecordNotFound:
                orphans.append(ranking.pain_id)
                continue
            if pain.segment_id in segment_ids:
                present.append(pain)
            else:
                orphans.append(ranking.pain_id)
        return present, sorted(orphans)

    def orphan_pains(self, project_id: str) -> list[str]:
        """Ids of pain records whose segment no longer exists."""
        segment_ids = {segment.segment_id for segment in self.list_segments(project_id)}
        return sorted(pain.pain_id for pain in self.list_pains(project_id) if pain.segment_id not in segment_ids)

    def orphan_rankings(self, project_id: str) -> list[str]:
        segment_ids = {segment.segment_id for segment in self.list_segments(project_id)}
        return sorted(
            ranking.pain_id
            for ranking in self.list_rankings(project_id)
            if ranking.segment_id not in segment_ids or not self.pain_exists(project_id, ranking.pain_id)
        )


# ---------------------------------------------------------------------------
# Approval hooks
# ---------------------------------------------------------------------------

def materialize_segments(entities: EntityRepository, artifact: ApprovedArtifact) -> None:
    entities.replace_segments(artifact.instance.project_id, artifact.content.get("segments", []))


def materialize_pains(entities: EntityRepository, artifact: ApprovedArtifact) -> None:
    entities.replace_pains(artifact.instance.project_id, artifact.instance.scope_key, artifact.content.get("pains", []))


def materialize_rankings(entities: EntityRepository, artifact: ApprovedArtifact) -> None:
    project_id = artifact.instance.project_id
    segment_id = artifact.instance.scope_key
    ranked: set[str] = set()
    for item in artifact.content.get("rankings", []):
        pain_id = item["pain_id"]
        if not entities.pain_exists(project_id, pain_id):
            logger.warning("ranking for segment %s names unknown pain %s; skipped", segment_id, pain_id)
            continue
        ranked.add(pain_id)
        entities.upsert_ranking(
            RankingRecord(
                project_id=project_id,
                segment_id=segment_id,
                pain_id=pain_id,
                impact_score=item.get("impact_score", 0.0),
                is_top_pain=bool(item.get("is_top_pain", False)),
                ranking_reasoning=item.get("ranking_reasoning", ""),
            )
        )
    for stale in entities.list_rankings(project_id, segment_id):
        if stale.pain_id not in ranked and entities.pain_exists(project_id, stale.pain_id):
            entities.delete_ranking(project_id, stale.pain_id)
    logger.info("materialized %d rankings for segment %s", len(ranked), segment_id)
