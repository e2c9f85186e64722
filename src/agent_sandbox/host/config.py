from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BrowserMode = Literal["headless", "embedded-cdp", "external-cdp"]


class HostSettings(BaseSettings):
    host: str = "0.0.0.0"
    api_port: int = 3000

    # Browser the automation tool attaches to
    browser_mode: BrowserMode = "headless"
    cdp_port: int = 9222  # Self-hosted browser debugging port (headless mode)
    external_cdp_endpoint: str | None = None  # Required for embedded-cdp / external-cdp

    # Liveness watchdog
    heartbeat_timeout_ms: int = 30000
    heartbeat_grace_count: int = 3
    watchdog_interval: float = 10.0  # Seconds between checks

    # Agent process, prompt is written to stdin
    agent_command: list[str] = ["codex", "exec", "--skip-git-repo-check"]
    work_dir: str | None = None

    # Browser automation tool, "--cdp-endpoint <endpoint>" is appended
    tool_command: list[str] = ["npx", "@playwright/mcp@latest"]

    model_config = SettingsConfigDict(env_prefix="SANDBOX_")

    @model_validator(mode="after")
    def _require_external_endpoint(self) -> "HostSettings":
        if self.browser_mode != "headless" and not self.external_cdp_endpoint:
            raise ValueError(
                f"browser_mode={self.browser_mode} requires external_cdp_endpoint"
            )
        return self
