from __future__ import annotations

import os
from pathlib import Path


def identity_home() -> Path:
    configured = os.environ.get("IDENTITY_CORE_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".identity-core"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    state = base / "state"
    telemetry = base / "telemetry"
    for path in (base, state, telemetry):
        path.mkdir(parents=True, exist_ok=True)
    return {"base": base, "state": state, "telemetry": telemetry}
