"""
Job submission and cancellation.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.billing.usage import UsageLedger
from calldispatch.jobs.models import CallJob, JobStatus
from calldispatch.jobs.schemas import JobCreate
from calldispatch.jobs.store import JobStore
from calldispatch.providers.repository import ProviderRepository
from calldispatch.shared.clock import Clock, default_clock
from calldispatch.shared.exceptions import ConflictError, NotFoundError, QuotaExceeded, ValidationError
from calldispatch.shared.logging import get_logger
from calldispatch.templates.renderer import TemplateRenderer

logger = get_logger(__name__)


class JobService:
    """Service for submitting, reading and canceling call jobs."""

    def __init__(
        self,
        session: AsyncSession,
        usage: UsageLedger,
        renderer: TemplateRenderer,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._store = JobStore(session, clock)
        self._usage = usage
        self._renderer = renderer
        self._clock = clock or default_clock()

    async def submit(self, data: JobCreate) -> CallJob:
        """Validate, charge-check and enqueue a job.

        Raises:
            ValidationError: Schedule in the past, bad template variables or
                unknown pinned provider.
            QuotaExceeded: The owner has no remaining calls.
            NotFoundError: Unknown template.
        """
        scheduled_at = data.scheduled_at
        if scheduled_at is not None:
            if scheduled_at.tzinfo is None:
                raise ValidationError("scheduled_at must include a timezone")
            if scheduled_at <= self._clock.now():
                raise ValidationError(
                    "scheduled_at must be in the future",
                    details={"scheduled_at": scheduled_at.isoformat()},
                )

        remaining = await self._usage.remaining_calls(data.owner_id)
        if remaining <= 0:
            logger.warning(
                "Job rejected; call allowance exhausted",
                extra={"owner_id": data.owner_id},
            )
            raise QuotaExceeded(details={"owner_id": data.owner_id, "remaining_calls": remaining})

        providers = ProviderRepository(self._session)
        if data.pinned_provider_id is not None:
            provider = await providers.get_by_id(data.pinned_provider_id)
            if provider is None:
                raise ValidationError(
                    "Pinned provider does not exist",
                    details={"pinned_provider_id": data.pinned_provider_id},
                )

        # Only ids seen by the last resource sync are accepted.
        if data.assistant_id is not None:
            if await providers.find_active_assistant(data.assistant_id, data.pinned_provider_id) is None:
                raise ValidationError(
                    "Unknown or inactive assistant",
                    details={"assistant_id": data.assistant_id},
                )
        if data.phone_number_id is not None:
            if await providers.find_active_phone_number(data.phone_number_id, data.pinned_provider_id) is None:
                raise ValidationError(
                    "Unknown or inactive phone number",
                    details={"phone_number_id": data.phone_number_id},
                )

        rendered = self._renderer.render(data.template_id, data.variables)
        job = CallJob(
            owner_id=data.owner_id,
            recipient_phone=data.recipient.phone,
            recipient_name=data.recipient.name,
            recipient_email=str(data.recipient.email) if data.recipient.email else None,
            scheduled_at=scheduled_at,
            priority=data.priority,
            pinned_provider_id=data.pinned_provider_id,
            payload={
                "template_id": data.template_id,
                "variables": data.variables,
                "script": rendered.script,
                "assistant_id": data.assistant_id or rendered.assistant_id,
                "phone_number_id": data.phone_number_id,
                "voice": rendered.voice,
                "metadata": data.metadata,
            },
        )
        await self._store.enqueue(job)
        await self._session.refresh(job)
        return job

    async def get(self, job_id: int) -> CallJob:
        job = await self._store.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def cancel(self, job_id: int) -> CallJob:
        """Cancel a job that has not been dispatched yet.

        Raises:
            NotFoundError: Unknown job.
            ConflictError: The job already left ``pending``.
        """
        job = await self.get(job_id)
        canceled = await self._store.transition(
            job_id,
            [JobStatus.PENDING],
            JobStatus.CANCELED,
            completed_at=self._clock.now(),
            last_error="Canceled by user",
        )
        if not canceled:
            current = await self.get(job_id)
            raise ConflictError(
                f"Job {job_id} cannot be canceled in status {current.status.value}",
                details={"status": current.status.value},
            )
        logger.info("Job canceled", extra={"job_id": job_id, "call_id": job.call_id})
        return await self.get(job_id)
