import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    api_key:           str   = ""
    api_base:          str   = "https://openrouter.ai/api/v1"
    model:             str   = "qwen/qwen3-coder:free"
    site_url:          str   = "http://localhost:3000"
    site_name:         str   = "PromptForge"
    max_tokens:        int   = 15000
    temperature:       float = 0.7
    request_timeout:   float = 240.0

    projects_dir:      Path  = BASE_DIR / "ai-previews"
    port_mapping_file: Path  = BASE_DIR / ".port-mapping.json"
    first_preview_port: int  = 3002
    auto_start_preview: bool = True
    use_tailwind:      bool  = True

    http_host:         str   = "127.0.0.1"
    http_port:         int   = 3000
    ws_port:           int   = 3001

    max_retries:       int   = 3
    retry_base_delay:  float = 1.0
    retry_max_delay:   float = 5.0
    min_request_interval: float = 3.0
    max_queue_size:    int   = 50
    max_queue_wait:    float = 300.0

    history_messages:  int   = 10
    log_level:         str   = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        e = os.environ.get
        return cls(
            api_key            = e("OPENROUTER_API_KEY", "").strip().strip('"').strip("'"),
            api_base           = e("OPENROUTER_BASE_URL", cls.api_base),
            model              = e("FORGE_MODEL", cls.model),
            site_url           = e("FORGE_SITE_URL", cls.site_url),
            site_name          = e("FORGE_SITE_NAME", cls.site_name),
            max_tokens         = int(e("FORGE_MAX_TOKENS", cls.max_tokens)),
            temperature        = float(e("FORGE_TEMPERATURE", cls.temperature)),
            request_timeout    = float(e("FORGE_REQUEST_TIMEOUT", cls.request_timeout)),
            projects_dir       = Path(e("FORGE_PROJECTS_DIR", str(cls.projects_dir))),
            port_mapping_file  = Path(e("FORGE_PORT_MAPPING_FILE", str(cls.port_mapping_file))),
            first_preview_port = int(e("FORGE_FIRST_PREVIEW_PORT", cls.first_preview_port)),
            auto_start_preview = _env_bool("FORGE_AUTO_PREVIEW", cls.auto_start_preview),
            use_tailwind       = _env_bool("FORGE_USE_TAILWIND", cls.use_tailwind),
            http_host          = e("FORGE_HOST", cls.http_host),
            http_port          = int(e("FORGE_HTTP_PORT", cls.http_port)),
            ws_port            = int(e("FORGE_WS_PORT", cls.ws_port)),
            max_retries        = int(e("FORGE_MAX_RETRIES", cls.max_retries)),
            min_request_interval = float(e("FORGE_MIN_REQUEST_INTERVAL", cls.min_request_interval)),
            max_queue_size     = int(e("FORGE_MAX_QUEUE_SIZE", cls.max_queue_size)),
            max_queue_wait     = float(e("FORGE_MAX_QUEUE_WAIT", cls.max_queue_wait)),
            log_level          = e("FORGE_LOG_LEVEL", cls.log_level).upper(),
        )
