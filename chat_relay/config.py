import json
import os
from functools import lru_cache
from typing import List


def _parse_system_instructions(raw: str) -> List[str]:
  raw = (raw or "").strip()
  if not raw:
    return []
  if raw.startswith("["):
    try:
      values = json.loads(raw)
    except json.JSONDecodeError as exc:
      raise RuntimeError(f"RELAY_SYSTEM_INSTRUCTIONS is not valid JSON: {exc}") from exc
    if not isinstance(values, list):
      raise RuntimeError("RELAY_SYSTEM_INSTRUCTIONS must be a JSON array of strings")
    return [str(v) for v in values if str(v).strip()]
  return [raw]


class Settings:
  """Centralized configuration pulled from environment variables."""

  app_name: str = "LINE Chat Relay"
  app_version: str = os.getenv("APP_VERSION", "0.0.1")

  supabase_url: str | None
  supabase_service_role: str | None
  messages_table: str

  openai_temperature: float
  conversation_window_size: int
  system_instructions: List[str]
  serialize_per_user: bool
  usage_logging_enabled: bool

  def __init__(self) -> None:
    self.supabase_url = os.getenv("SUPABASE_URL")
    self.supabase_service_role = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv(
        "SUPABASE_SERVICE_ROLE"
    )
    self.messages_table = os.getenv("MESSAGES_TABLE", "").strip() or "messages"

    self.openai_temperature = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))

    window_size = int(os.getenv("CONVERSATION_WINDOW_SIZE", "3"))
    if window_size < 0:
      raise RuntimeError("CONVERSATION_WINDOW_SIZE must be >= 0")
    self.conversation_window_size = window_size

    self.system_instructions = _parse_system_instructions(
        os.getenv("RELAY_SYSTEM_INSTRUCTIONS", "")
    )
    self.serialize_per_user = os.getenv("RELAY_SERIALIZE_PER_USER", "").strip().lower() in {
        "1", "true", "yes", "on",
    }
    self.usage_logging_enabled = os.getenv("ENABLE_USAGE_LOGGING", "0") == "1"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  return Settings()


settings = get_settings()
