"""Request Repository — the actor's service requests and their mutations.

Admins see every request, customers only their own; the list is kept
newest first. Mutations are applied locally first, then sent to the
gateway. If the gateway refuses, the local list is replaced by a fresh
fetch (no undo log) and the error is raised. Mutations are never retried
automatically.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import pydantic

from src.common.config import MediaSettings, settings
from src.common.exceptions import FetchError, PersistError, UpdateError, ValidationError
from src.common.models import (
    Actor,
    MediaItem,
    MediaType,
    NotificationType,
    RequestDraft,
    RequestStatus,
    Role,
    ServiceRequest,
)
from src.gateway.client import NOTES_TABLE, REQUESTS_TABLE, SupabaseGateway
from src.gateway.email import EmailNotifier, RequestCreatedEmail, StatusUpdateEmail
from src.gateway.storage import MediaFile

from . import status as workflow
from .notes import NoteThreadManager
from .notifications import NotificationService, request_link

logger = logging.getLogger(__name__)

# Fields staff may set alongside a status change.
STAFF_FIELDS = frozenset({
    "estimated_cost",
    "currency",
    "shipping_company",
    "shipping_tracking_code",
    "rejection_reason",
})

# Request list filters offered to staff.
STATUS_FILTERS = ("pending", "resolved", "rejected", "all")


def validate_media(media: list[MediaItem]) -> None:
    """A request needs at least one photo and one video."""
    types = {item.type for item in media}
    if MediaType.IMAGE not in types:
        raise ValidationError("At least one photo is required")
    if MediaType.VIDEO not in types:
        raise ValidationError("At least one video is required")


def check_upload_sizes(files: list[MediaFile], max_video_bytes: int) -> None:
    """Refuse oversized videos before anything is uploaded."""
    for media in files:
        if media.media_type is MediaType.VIDEO and len(media.data) > max_video_bytes:
            raise ValidationError(
                f"{media.filename} is larger than {max_video_bytes // (1024 * 1024)} MB"
            )


def filter_requests(
    requests: list[ServiceRequest],
    term: str = "",
    status_filter: str = "all",
) -> list[ServiceRequest]:
    """Case-insensitive search over name/brand/model plus a status filter."""
    term = term.lower().strip()
    matched = []
    for req in requests:
        if term and not any(term in value.lower() for value in (req.full_name, req.brand, req.model)):
            continue
        if status_filter != "all" and req.status.value != status_filter:
            continue
        matched.append(req)
    return matched


class RequestRepository:
    """Authoritative in-memory request list for one actor."""

    def __init__(
        self,
        gateway: SupabaseGateway,
        actor: Actor,
        notes: NoteThreadManager,
        notifier: NotificationService,
        email: Optional[EmailNotifier] = None,
        media_settings: Optional[MediaSettings] = None,
    ) -> None:
        self._gateway = gateway
        self._actor = actor
        self._notes = notes
        self._notifier = notifier
        self._email = email
        self._media = media_settings or settings.media
        self._requests: list[ServiceRequest] = []

    # --- Snapshots ---

    def snapshot(self) -> list[ServiceRequest]:
        return list(self._requests)

    def has_cache(self) -> bool:
        return bool(self._requests)

    @property
    def media_settings(self) -> MediaSettings:
        return self._media

    def get(self, request_id: str) -> Optional[ServiceRequest]:
        for req in self._requests:
            if req.id == request_id:
                return req
        return None

    def _require(self, request_id: str) -> ServiceRequest:
        req = self.get(request_id)
        if req is None:
            raise ValidationError(f"Unknown request: {request_id}")
        return req

    def _replace(self, updated: ServiceRequest) -> None:
        self._requests = [updated if r.id == updated.id else r for r in self._requests]

    # --- Reads ---

    async def list_requests(self, actor: Optional[Actor] = None) -> list[ServiceRequest]:
        """Fetch the actor's requests, newest first. Raises FetchError."""
        actor = actor or self._actor
        filters = None if actor.role is Role.ADMIN else {"user_id": actor.id}
        rows = await self._gateway.select(
            REQUESTS_TABLE, filters=filters, order="created_at", desc=True
        )
        return [ServiceRequest(**row) for row in rows]

    async def fetch_notes_index(self, request_ids: list[str]) -> list[dict]:
        """Note authorship rows (request_id, author_id), oldest first."""
        if not request_ids:
            return []
        return await self._gateway.select(
            NOTES_TABLE,
            columns="request_id, author_id, created_at",
            in_filter=("request_id", request_ids),
            order="created_at",
        )

    def apply_list(self, requests: list[ServiceRequest]) -> None:
        self._requests = list(requests)

    async def refresh(self) -> list[ServiceRequest]:
        self.apply_list(await self.list_requests())
        return self.snapshot()

    async def _resync(self) -> None:
        """Replace local state with the server's after a failed write."""
        try:
            await self.refresh()
        except FetchError as e:
            logger.warning("Re-sync after failed write also failed: %s", e)

    # --- Push ---

    def apply_remote_update(self, row: dict) -> Optional[ServiceRequest]:
        """Server rows overwrite local ones unconditionally."""
        updated = ServiceRequest(**row)
        if self.get(updated.id) is None:
            return None
        self._replace(updated)
        return updated

    def apply_remote_insert(self, row: dict) -> Optional[ServiceRequest]:
        created = ServiceRequest(**row)
        if self.get(created.id) is not None:
            return None
        if self._actor.role is not Role.ADMIN and created.user_id != self._actor.id:
            return None
        self._requests.append(created)
        self._requests.sort(key=lambda r: r.created_at, reverse=True)
        return created

    # --- Create ---

    def build_draft(self, draft: RequestDraft | dict) -> RequestDraft:
        if isinstance(draft, RequestDraft):
            result = draft
        else:
            try:
                result = RequestDraft(**draft)
            except pydantic.ValidationError as exc:
                raise ValidationError(str(exc)) from exc
        if len(result.description.strip()) < self._media.min_description_length:
            raise ValidationError(
                f"Description must be at least {self._media.min_description_length} characters"
            )
        return result

    async def create_request(
        self,
        draft: RequestDraft | dict,
        uploaded_media: list[MediaItem],
    ) -> ServiceRequest:
        """Insert a new pending request for the actor.

        Raises:
            ValidationError: Bad draft or missing photo/video.
            PersistError: Insert refused after media was already uploaded.
        """
        draft = self.build_draft(draft)
        validate_media(uploaded_media)

        row: dict[str, Any] = {
            "user_id": self._actor.id,
            "full_name": self._actor.full_name,
            "email": self._actor.email,
            "phone": self._actor.phone,
            **draft.model_dump(mode="json"),
            "media_urls": [item.model_dump(mode="json") for item in uploaded_media],
            "status": RequestStatus.PENDING.value,
        }
        try:
            stored = await self._gateway.insert(REQUESTS_TABLE, row)
        except PersistError as exc:
            raise PersistError(
                f"Media uploaded but the request could not be saved: {exc}"
            ) from exc
        if not stored:
            raise PersistError("Request insert returned no row")

        created = ServiceRequest(**stored[0])
        self._requests.insert(0, created)
        logger.info("Created request %s (%s)", created.id, created.device)

        await self._notifier.notify_admins(
            "New service request",
            f"{created.full_name or 'A customer'} filed a request for {created.device}.",
            NotificationType.INFO,
            request_link(Role.ADMIN, created.id),
        )
        if self._email is not None:
            self._email.send_service_request_created(
                RequestCreatedEmail(
                    full_name=created.full_name,
                    email=created.email,
                    phone=created.phone,
                    brand=created.brand,
                    model=created.model,
                    product_date=created.product_date,
                    description=created.description,
                )
            )
        return created

    # --- Mutations ---

    async def _apply_change(
        self,
        current: ServiceRequest,
        changes: dict[str, Any],
    ) -> ServiceRequest:
        """Optimistic local update, then gateway write; re-sync on failure."""
        optimistic = current.model_copy(update=changes)
        self._replace(optimistic)
        payload = {
            key: value.value if isinstance(value, RequestStatus) else value
            for key, value in changes.items()
        }
        try:
            stored = await self._gateway.update(REQUESTS_TABLE, payload, {"id": current.id})
        except PersistError as exc:
            logger.error("Update of request %s failed: %s", current.id, exc)
            # Last confirmed row stays if the re-sync fails too
            self._replace(current)
            await self._resync()
            raise UpdateError(f"Could not update request {current.short_id}: {exc}") from exc
        if stored:
            confirmed = ServiceRequest(**stored[0])
            self._replace(confirmed)
            return confirmed
        return optimistic

    async def _record(
        self,
        request: ServiceRequest,
        note_text: str,
        title: str,
        message: str,
        type: NotificationType,
    ) -> None:
        """System note + counterpart notification after a successful change."""
        try:
            await self._notes.append_system_note(request.id, note_text)
        except PersistError as e:
            logger.error("System note for request %s failed: %s", request.id, e)
        await self._notifier.notify_counterpart(
            self._actor, request.user_id, title, message, type, request_id=request.id
        )

    def _email_owner(self, request: ServiceRequest, note_text: str) -> None:
        if self._email is None:
            return
        self._email.send_status_update(
            StatusUpdateEmail(
                to_email=request.email,
                full_name=request.full_name,
                brand=request.brand,
                model=request.model,
                new_status=workflow.label(request.status).upper(),
                latest_note=note_text,
            )
        )

    async def update_status(
        self,
        request_id: str,
        new_status: RequestStatus | str,
        extra_fields: Optional[dict[str, Any]] = None,
    ) -> ServiceRequest:
        """Move a request to ``new_status`` (staff), with optional quote/shipping fields."""
        try:
            new_status = RequestStatus(new_status)
        except ValueError as exc:
            raise ValidationError(f"Unknown status: {new_status}") from exc
        extra = dict(extra_fields or {})
        unknown = set(extra) - STAFF_FIELDS
        if unknown:
            raise ValidationError(f"Fields not editable with a status change: {sorted(unknown)}")

        current = self._require(request_id)
        if new_status is RequestStatus.REJECTED:
            return await self.reject_request(request_id, extra.get("rejection_reason") or "")
        workflow.validate_transition(current.status, new_status)
        extra.pop("rejection_reason", None)

        changes: dict[str, Any] = {"status": new_status, **extra}
        updated = await self._apply_change(current, changes)

        note_text = workflow.describe_change(
            current.status, new_status, updated.estimated_cost, updated.currency
        )
        await self._record(
            updated,
            note_text,
            "Request status updated",
            f"{updated.device}: {workflow.label(new_status)}",
            workflow.STATUS_NOTIFICATION_TYPES.get(new_status, NotificationType.INFO),
        )
        self._email_owner(updated, note_text)
        return updated

    async def reject_request(self, request_id: str, reason: str) -> ServiceRequest:
        """Reject a non-terminal request with a mandatory reason."""
        current = self._require(request_id)
        workflow.validate_rejection(current, reason)
        reason = reason.strip()

        updated = await self._apply_change(
            current, {"status": RequestStatus.REJECTED, "rejection_reason": reason}
        )
        note_text = f"REJECTED: {reason}"
        await self._record(
            updated,
            note_text,
            "Request rejected",
            f"{updated.device}: {reason}",
            NotificationType.ERROR,
        )
        self._email_owner(updated, note_text)
        return updated

    async def approve_cost(self, request_id: str) -> ServiceRequest:
        """Customer accepts the quoted cost; the request moves to approved."""
        current = self._require(request_id)
        workflow.validate_approval(current)

        updated = await self._apply_change(
            current, {"status": RequestStatus.APPROVED, "approved_by_customer": True}
        )
        if current.estimated_cost is not None:
            quote = f"{current.estimated_cost:g} {current.currency or ''}".strip()
        else:
            quote = "quote"
        await self._record(
            updated,
            f"CUSTOMER APPROVAL: {quote} approved.",
            "Cost approved",
            f"The customer approved the quote for request #{updated.short_id}.",
            NotificationType.SUCCESS,
        )
        return updated
