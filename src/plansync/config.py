from pydantic import BaseModel, Field

from .models import TEMP_ID_PREFIX


class EngineConfig(BaseModel):
    """Tunables shared by the retry executor, the pipeline and the SQLite adaptor."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)  # Seconds before the first retry
    temp_id_prefix: str = TEMP_ID_PREFIX
    polling_interval: float = Field(default=0.2, gt=0)
    pool_size: int = Field(default=5, ge=1)
