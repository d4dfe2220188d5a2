from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Relay the client connects to (ws:// or wss://)
    RELAY_URL: str = 'ws://localhost:3001'
    CONNECT_TIMEOUT: float = 10.0

    # At least one STUN/TURN url is required to build a peer connection
    ICE_SERVERS: list[str] = ['stun:stun.l.google.com:19302']

    DEFAULT_ROOM: str = 'main'
    TYPING_IDLE_MS: int = 800

    # Development relay only: messages kept per room for room-history
    HISTORY_LIMIT: int = 100

    LOG_LEVEL: str = 'INFO'

    model_config = {'env_prefix': 'FLASHROOM_', 'env_file': '.env'}

    @field_validator('ICE_SERVERS')
    @classmethod
    def _need_ice_server(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError('at least one ICE server url is required')
        return v


settings = Settings()
