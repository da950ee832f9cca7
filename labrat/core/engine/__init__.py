"""Engine — install/uninstall orchestration."""

from labrat.core.engine.orchestrator import ModuleOutcome, Orchestrator, RunReport

__all__ = ["ModuleOutcome", "Orchestrator", "RunReport"]
