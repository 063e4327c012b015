from typing import Optional

from .jobs.base import JobBackend
from .models import JobView


class JobStatusFacade:
    """Read-only job lookup. Adapters normalize; this never mutates a job."""

    def __init__(self, backend: Optional[JobBackend]):
        self.backend = backend

    async def get_status(self, job_id: str) -> Optional[JobView]:
        if self.backend is None or not job_id:
            return None
        return await self.backend.get_job(job_id)
