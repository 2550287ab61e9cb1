import os
import tempfile
from dataclasses import dataclass
from dotenv import load_dotenv


@dataclass(frozen=True)
class EngineSettings:
    log_level: str = "INFO"
    default_shell: str = "bash"
    http_user_agent: str = "node-engine/1.0"
    max_parallel_concurrency: int = 50
    temp_dir: str = tempfile.gettempdir()


def load_settings() -> EngineSettings:
    """
    Loads engine settings from environment variables (and a .env file if present).
    """
    load_dotenv()

    return EngineSettings(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        default_shell=os.getenv("ENGINE_DEFAULT_SHELL", "bash"),
        http_user_agent=os.getenv("ENGINE_HTTP_USER_AGENT", "node-engine/1.0"),
        max_parallel_concurrency=int(os.getenv("ENGINE_MAX_CONCURRENCY", "50")),
        temp_dir=os.getenv("ENGINE_TEMP_DIR", tempfile.gettempdir()),
    )
