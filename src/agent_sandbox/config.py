from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    tasks_path: str = "tasks.json"
    max_concurrency: int = 1

    # Execution host
    host_address: str = "127.0.0.1"
    host_ports: list[int] = [3000]  # One host per concurrent run
    request_timeout: float = 30.0  # Seconds, does not bound streamed runs
    health_check_attempts: int = 30
    health_check_interval: float = 1.0
    heartbeat_interval: float = 10.0  # Must stay below the host's heartbeat timeout

    # Scheduler
    scheduler_interval: int = 60  # Seconds between due checks
    schedule_due_window: int = 5  # Minutes after a timing a never-run task may still fire

    model_config = SettingsConfigDict(env_prefix="CONTROLLER_")
