from app.models.api_config import ApiConfig
from app.models.batch_job import StoredBatchJob
from app.models.generation import Generation

__all__ = [
    "ApiConfig",
    "Generation",
    "StoredBatchJob",
]
