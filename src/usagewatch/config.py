import os
from dataclasses import dataclass
from pathlib import Path


def _default_state_file() -> "str":
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return str(Path(base) / "usagewatch" / "state.json")


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186", empty disables the metrics server
    listen_address: "str" = ":9186"
    # base poll interval in seconds
    poll_interval: "int" = 60
    log_level: "str" = "info"

    state_file: "str" = ""
    # sessionKey cookie value, adopted when no credential is stored
    session_key: "str" = ""

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            state_file=os.environ.get("USAGEWATCH_STATE_FILE", "") or _default_state_file(),
            session_key=os.environ.get("CLAUDE_SESSION_KEY", ""),
        )

    @property
    def key_file(self) -> "str":
        # Fernet key for the encrypted store values
        return str(Path(self.state_file).with_suffix(".key"))

    @property
    def metrics_enabled(self) -> "bool":
        return bool(self.listen_address)
