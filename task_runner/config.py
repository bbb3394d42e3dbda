from __future__ import annotations

from pathlib import Path

from task_runner.settings import Settings, get_settings


def problem_dir(settings: Settings | None = None) -> Path:
    """Directory holding ``<question id>.json`` problem descriptors."""
    settings = settings or get_settings()
    root = Path(settings.problem_data_dir).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root
