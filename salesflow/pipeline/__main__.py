"""
CLI entrypoint: python -m salesflow.pipeline
Runs Import -> Stage -> Transform -> Derive against the legacy order database.
"""

import sys

from salesflow.contracts.config import PipelineConfig
from salesflow.contracts.logging_setup import setup_logging
from salesflow.contracts.results import PhaseStatus
from salesflow.contracts.schemas import PHASE_OUTPUT_ZONES, Phase
from salesflow.data_generator.generate import LEGACY_DB_PATH, legacy_sources
from salesflow.pipeline.runner import RunContext, run_pipeline


def main() -> int:
    setup_logging("WARNING")
    config = PipelineConfig.from_env()
    context = RunContext.create(config)
    print(f"[pipeline] Starting run {context.run_id} -> {config.data_root}")

    if not LEGACY_DB_PATH.exists():
        print(f"[pipeline] {LEGACY_DB_PATH} not found, run `python -m salesflow.main generate` first")
        return 1

    summary = run_pipeline(context, sources=legacy_sources(LEGACY_DB_PATH))

    for step, phase in enumerate(Phase, start=1):
        results = summary.for_phase(phase.value)
        zones = "/".join(z.value for z in PHASE_OUTPUT_ZONES[phase])
        print(f"[pipeline] Step {step}/{len(Phase)}: {phase.value} -> {zones}")
        for r in results:
            reason = f" ({r.reason})" if r.reason else ""
            print(f"  {r.status.value:<8} {r.target}: {r.rows_out:,} rows{reason}")

    print(f"\n[pipeline] Done in {summary.elapsed_seconds:.2f}s.")
    print("\nSummary:")
    print(f"  Rows processed : {summary.rows_processed:,}")
    print(f"  Degraded       : {sum(r.status == PhaseStatus.DEGRADED for r in summary.results)}")
    print(f"  Failed         : {len(summary.failed)}")
    return 1 if summary.failed else 0


if __name__ == "__main__":
    sys.exit(main())
