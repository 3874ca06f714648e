"""
Run orchestration: Import -> Stage -> Transform -> Derive.

Phases run strictly in order. Every phase entry point receives the RunContext
explicitly. A run can be cancelled between phases; once a phase fails or the
run is cancelled, the remaining phases are recorded as failed and never read
the incomplete output.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field

import requests

from salesflow.analytics.derivation import run_derivation
from salesflow.contracts.config import PipelineConfig
from salesflow.contracts.results import PhaseResult, PhaseStatus, RunSummary
from salesflow.contracts.schemas import Phase, Zone, entity_name, table_name
from salesflow.pipeline.importer import import_entity
from salesflow.pipeline.joiner import transform_sales
from salesflow.pipeline.stager import (
    COMPETITOR_STAGING,
    ORDER_DETAIL_STAGING,
    ORDER_HEADER_STAGING,
    REVIEW_STAGING,
    stage_entity,
)
from salesflow.pipeline.time_series import build_time_series
from salesflow.zones.store import ZoneStore

logger = logging.getLogger(__name__)

STAGING_SPECS = {
    ORDER_HEADER_STAGING.entity: ORDER_HEADER_STAGING,
    ORDER_DETAIL_STAGING.entity: ORDER_DETAIL_STAGING,
    REVIEW_STAGING.entity: REVIEW_STAGING,
    COMPETITOR_STAGING.entity: COMPETITOR_STAGING,
}

PHASE_ORDER = [Phase.IMPORT, Phase.STAGE, Phase.TRANSFORM, Phase.DERIVE]


@dataclass
class RunContext:
    """Everything a phase needs; nothing is read from module globals."""

    store: ZoneStore
    config: PipelineConfig
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    cancel_event: threading.Event = field(default_factory=threading.Event)
    session: requests.Session | None = None

    @classmethod
    def create(cls, config: PipelineConfig, run_id: str | None = None) -> "RunContext":
        context = cls(store=ZoneStore(config.data_root), config=config)
        if run_id:
            context.run_id = run_id
        return context

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

def run_import(context: RunContext, sources: dict) -> list[PhaseResult]:
    config = context.config
    return [
        import_entity(context.store, source, config.platform, entity, config.company, config,
                      session=context.session)
        for entity, source in sources.items()
    ]


def raw_table(config: PipelineConfig, entity: str) -> str:
    return table_name(entity_name(config.platform, entity), Zone.RAW, config.company)


def run_stage(context: RunContext, entities=None) -> list[PhaseResult]:
    config = context.config
    results = []
    for entity in entities or STAGING_SPECS:
        spec = STAGING_SPECS.get(entity)
        if spec is None:
            logger.warning("[stage] no staging spec for entity '%s', skipped", entity)
            continue
        optional = entities is None and not spec.required
        if optional and not context.store.exists(Zone.RAW, raw_table(config, entity)):
            logger.info("[stage] optional entity '%s' has no raw table, skipped", entity)
            continue
        results.append(stage_entity(context.store, spec, config.platform, config.company, config))
    return results


def run_transform(context: RunContext) -> list[PhaseResult]:
    config = context.config
    joined = transform_sales(context.store, config.platform, config.company, config)
    if not joined.ok:
        return [joined]
    return [joined, build_time_series(context.store, config)]


def run_derive(context: RunContext, segments=None) -> list[PhaseResult]:
    return run_derivation(context.store, context.config, segments=segments).results


# ---------------------------------------------------------------------------
# Whole run
# ---------------------------------------------------------------------------

def run_pipeline(context: RunContext, sources: dict | None = None, phases=None) -> RunSummary:
    """
    Run the requested phases (all by default) and return the run summary.
    Never raises for a phase-local failure.
    """
    summary = RunSummary(run_id=context.run_id)
    phases = [Phase(p) for p in (phases or PHASE_ORDER)]
    sources = sources or {}
    steps = {
        Phase.IMPORT: lambda: run_import(context, sources),
        Phase.STAGE: lambda: run_stage(context, list(sources) or None),
        Phase.TRANSFORM: lambda: run_transform(context),
        Phase.DERIVE: lambda: run_derive(context),
    }

    halted_by = None
    for phase in PHASE_ORDER:
        if phase not in phases:
            continue
        if context.cancelled:
            summary.cancelled = True
            summary.add(PhaseResult.failed(phase.value, "*", "cancelled"))
            continue
        if halted_by is not None:
            summary.add(PhaseResult.failed(phase.value, "*", f"skipped: {halted_by} failed"))
            continue
        if phase == Phase.IMPORT and not sources:
            logger.info("[pipeline] no sources configured, import skipped")
            continue

        logger.info("[pipeline] %s: %s phase", context.run_id, phase.value)
        for result in steps[phase]():
            summary.add(result)
            if result.status == PhaseStatus.FAILED:
                halted_by = phase.value

    summary.finish()
    logger.info("[pipeline] %s finished in %.2fs: %s rows, %d failed",
                context.run_id, summary.elapsed_seconds, f"{summary.rows_processed:,}", len(summary.failed))
    return summary
