"""Application settings loaded from environment variables or .env."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_env_files() -> list[Path]:
    """Find .env files to load, searching upward from CWD and in the package dir.

    Checks (in priority order, last wins in pydantic-settings):
    1. The qanalytics package directory (next to this file)
    2. The current working directory
    3. Parent directories up to the filesystem root
    """
    candidates: list[Path] = []

    pkg_env = Path(__file__).resolve().parent.parent / ".env"
    if pkg_env.is_file():
        candidates.append(pkg_env)

    cwd = Path.cwd().resolve()
    for parent in [cwd, *cwd.parents]:
        env_path = parent / ".env"
        if env_path.is_file() and env_path not in candidates:
            candidates.append(env_path)
            break  # stop at first match going upward

    return candidates


class QAnalyticsSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QANALYTICS_",
        env_file=_find_env_files(),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Extraction
    extraction_method: str = "pca"  # "pca" or "centroid"
    factor_count_rule: Literal["kaiser", "parallel"] = "kaiser"  # when no count is given
    parallel_simulations: int = Field(default=100, ge=1)

    # Rotation
    rotation_tolerance: float = 1e-6
    rotation_max_iterations: int = 100
    kaiser_normalization: bool = True
    auto_rotate_budget_seconds: float = 2.0

    # Classification and statement statistics
    significance_alpha: float = 0.05
    loading_threshold: float | None = None  # None = 1.96 / sqrt(statements)
    assignment_margin: float = Field(default=0.05, ge=0.0)

    # Files: the default database and the server log live under data_dir
    data_dir: Path = Path("~/.config/qanalytics")
    db_url: str = ""  # empty = <data_dir>/qanalytics.db
    log_level: str = "INFO"  # log file only; the terminal follows -v

    # Server
    host: str = "127.0.0.1"
    port: int = 8160

    @property
    def database_url(self) -> str:
        """The configured URL, or the SQLite file under :attr:`data_dir`."""
        if self.db_url:
            return self.db_url
        return f"sqlite:///{self.data_dir.expanduser() / 'qanalytics.db'}"

    @property
    def log_dir(self) -> Path:
        return self.data_dir.expanduser() / "logs"


def load_settings(**overrides: object) -> QAnalyticsSettings:
    """Load settings with optional CLI overrides.

    ``None`` overrides are dropped so unset CLI options fall through to the
    environment.  The extraction method name is normalised (``pc`` and
    ``principal`` are accepted for ``pca``).
    """
    overrides = {k: v for k, v in overrides.items() if v is not None}

    method = overrides.get("extraction_method")
    if isinstance(method, str):
        method = method.lower()
        overrides["extraction_method"] = _METHOD_ALIASES.get(method, method)

    return QAnalyticsSettings(**overrides)  # type: ignore[arg-type]


_METHOD_ALIASES = {
    "pc": "pca",
    "principal": "pca",
    "principal-components": "pca",
    "brown": "centroid",
}
