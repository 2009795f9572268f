"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

_FALSY = {"0", "false", "no", "off"}


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path(".spec") / "spec-relay.db")
    spec_dir: Path = field(default_factory=lambda: Path(".spec"))
    tracking_dir: Path = field(default_factory=lambda: Path("projects"))
    work_dir: Path = field(default_factory=lambda: Path.cwd())
    file_sync: bool = True
    strict_handoff: bool = False
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("SR_DB_PATH"):
            config.db_path = Path(db)

        if spec := os.environ.get("SR_SPEC_DIR"):
            config.spec_dir = Path(spec)

        if tracking := os.environ.get("SR_TRACKING_DIR"):
            config.tracking_dir = Path(tracking)

        if work := os.environ.get("SR_WORK_DIR"):
            config.work_dir = Path(work)

        if (sync := os.environ.get("SR_FILE_SYNC")) is not None:
            config.file_sync = sync.strip().lower() not in _FALSY

        if (strict := os.environ.get("SR_STRICT_HANDOFF")) is not None:
            config.strict_handoff = strict.strip().lower() not in _FALSY | {""}

        if level := os.environ.get("SR_LOG_LEVEL"):
            config.log_level = level.upper()

        if fmt := os.environ.get("SR_LOG_FORMAT"):
            config.log_format = fmt.lower()

        return config


def get_config() -> Config:
    return Config.from_env()
