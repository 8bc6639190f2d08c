"""Configuration via pydantic-settings with environment variable support."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class ChatExcelConfig(BaseSettings):
    """Analysis engine configuration. All values configurable via CHATEXCEL_* env vars."""

    model_config = {"env_prefix": "CHATEXCEL_"}

    # Upload staging
    max_files: int = 5
    max_total_bytes: int = 100 * 1024 * 1024  # 100MB
    schema_sniff_bytes: int = 8192
    allowed_extensions: list[str] = ["csv", "xlsx", "xls"]

    # Remote command resolver
    resolver_url: str = "http://127.0.0.1:8000/api/v1/basic-datalab/analyze"
    resolver_api_key: str | None = None
    resolver_timeout_s: float = 60.0

    # Quota collaborator (unset means every operation is permitted)
    quota_url: str | None = None
    quota_timeout_s: float = 10.0

    # Sandbox runtime
    exec_timeout_s: float = 120.0
    sandbox_dir: Path | None = None
    base_packages: list[str] = ["pandas", "numpy", "matplotlib"]
    extra_packages: list[str] = ["plotly", "openpyxl", "xlrd"]
    allow_package_install: bool = True
    package_index_url: str | None = None

    # Plotting defaults applied by the sandbox prelude
    plot_style: str = "seaborn-v0_8"
    figure_width_in: float = 10.0
    figure_height_in: float = 6.0
    figure_dpi: int = 100

    # Size limits
    max_code_bytes: int = 100 * 1024  # 100KB
    max_instruction_chars: int = 4000
    max_upload_bytes: int = 100 * 1024 * 1024  # 100MB

    # HTTP output-file server
    http_host: str = "127.0.0.1"
    http_port: int = 8080

    # Logging
    log_level: str = "INFO"
    log_file: Path = Path("logs/chatexcel.log")
    log_format: Literal["console", "json"] = "console"
