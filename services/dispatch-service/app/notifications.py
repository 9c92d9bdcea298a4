import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import not_

from .clock import utcnow
from .config import ADMIN_POLL_INTERVAL_SECONDS, TECHNICIAN_POLL_INTERVAL_SECONDS
from .errors import Forbidden, NotFound, StoreUnavailable
from .models import Notification, NotificationScope, NotificationType

logger = logging.getLogger(__name__)

DEFAULT_TITLES = {
    NotificationType.BOOKING: "Booking update",
    NotificationType.PAYMENT: "Payment update",
    NotificationType.CANCELLATION: "Booking cancelled",
    NotificationType.JOB_OFFER: "Job offer",
}


@dataclass(frozen=True)
class Scope:
    kind: NotificationScope
    technician_id: str | None = None

    @classmethod
    def admin(cls) -> "Scope":
        return cls(NotificationScope.ADMIN)

    @classmethod
    def technician(cls, technician_id: str) -> "Scope":
        if not technician_id:
            raise Forbidden("Technician scope requires a technician id")
        return cls(NotificationScope.TECHNICIAN, technician_id)

    def criteria(self) -> list:
        if self.kind == NotificationScope.ADMIN:
            return [Notification.scope == NotificationScope.ADMIN.value]
        return [
            Notification.scope == NotificationScope.TECHNICIAN.value,
            Notification.technician_id == self.technician_id,
        ]

    def owns(self, notification: Notification) -> bool:
        if notification.scope != self.kind.value:
            return False
        if self.kind == NotificationScope.TECHNICIAN:
            return notification.technician_id == self.technician_id
        return True


@dataclass
class NotificationPage:
    items: list = field(default_factory=list)
    unread_count: int = 0
    important_unread_count: int = 0
    total: int = 0
    page: int = 1
    limit: int = 10
    poll_interval_seconds: int = ADMIN_POLL_INTERVAL_SECONDS


class NotificationCenter:
    """
    Append-only notification store with pull delivery.

    Consumers learn about new records on their next poll; nothing here
    pushes. Counts are recomputed from the store on every read.
    """

    def __init__(
        self,
        gateway,
        now=utcnow,
        admin_poll_interval_seconds: int = ADMIN_POLL_INTERVAL_SECONDS,
        technician_poll_interval_seconds: int = TECHNICIAN_POLL_INTERVAL_SECONDS,
    ):
        self.gateway = gateway
        self.now = now
        self.admin_poll_interval_seconds = admin_poll_interval_seconds
        self.technician_poll_interval_seconds = technician_poll_interval_seconds

    def poll_interval(self, scope: Scope) -> int:
        if scope.kind == NotificationScope.TECHNICIAN:
            return self.technician_poll_interval_seconds
        return self.admin_poll_interval_seconds

    async def create(
        self,
        scope: Scope,
        type: NotificationType,
        reference_id: str | None,
        message: str,
        is_important: bool = False,
        title: str | None = None,
    ) -> Notification:
        notification_type = NotificationType(type)
        record = Notification(
            notification_id=str(uuid.uuid4()),
            scope=scope.kind.value,
            technician_id=scope.technician_id,
            type=notification_type.value,
            reference_id=reference_id,
            title=title or DEFAULT_TITLES[notification_type],
            message=message,
            is_read=False,
            is_important=bool(is_important),
            created_at=self.now(),
        )
        await self.gateway.insert(record)
        return record

    async def emit(self, scope: Scope, type: NotificationType, reference_id: str | None, message: str, **kwargs):
        """
        Side-effect notification for an already committed change. A store
        outage here is logged instead of failing the committed operation.
        """
        try:
            return await self.create(scope, type, reference_id, message, **kwargs)
        except StoreUnavailable as e:
            logger.error("dropped %s notification for %s: %s", type, reference_id, e.message)
            return None

    async def list(
        self,
        scope: Scope,
        unread_only: bool = False,
        type: NotificationType | None = None,
        important_only: bool = False,
        page: int = 1,
        limit: int = 10,
    ) -> NotificationPage:
        page = max(1, page)
        limit = max(1, min(limit, 100))

        criteria = scope.criteria()
        if unread_only:
            criteria.append(Notification.is_read.is_(False))
        if important_only:
            criteria.append(Notification.is_important.is_(True))
        if type is not None:
            criteria.append(Notification.type == NotificationType(type).value)

        items = await self.gateway.query(
            Notification,
            *criteria,
            order_by=[Notification.created_at.desc(), Notification.id.desc()],
            limit=limit,
            offset=(page - 1) * limit,
        )
        total = await self.gateway.count(Notification, *criteria)
        unread = await self.unread_count(scope)
        important_unread = await self.gateway.count(
            Notification,
            *scope.criteria(),
            Notification.is_read.is_(False),
            Notification.is_important.is_(True),
        )
        return NotificationPage(
            items=items,
            unread_count=unread,
            important_unread_count=important_unread,
            total=total,
            page=page,
            limit=limit,
            poll_interval_seconds=self.poll_interval(scope),
        )

    async def unread_count(self, scope: Scope) -> int:
        return await self.gateway.count(Notification, *scope.criteria(), Notification.is_read.is_(False))

    async def _owned(self, notification_id: str, scope: Scope) -> Notification:
        record = await self.gateway.get(Notification, notification_id)
        if record is None:
            raise NotFound("Notification not found")
        if not scope.owns(record):
            raise Forbidden("Notification belongs to another recipient")
        return record

    async def mark_read(self, notification_id: str, scope: Scope) -> None:
        record = await self._owned(notification_id, scope)
        if record.is_read:
            return
        await self.gateway.conditional_update(
            Notification,
            notification_id,
            [Notification.is_read.is_(False)],
            {"is_read": True, "read_at": self.now()},
        )

    async def mark_all_read(self, scope: Scope) -> int:
        return await self.gateway.update_where(
            Notification,
            *scope.criteria(),
            Notification.is_read.is_(False),
            patch={"is_read": True, "read_at": self.now()},
        )

    async def toggle_important(self, notification_id: str, scope: Scope) -> bool:
        await self._owned(notification_id, scope)
        await self.gateway.conditional_update(
            Notification,
            notification_id,
            None,
            {"is_important": not_(Notification.is_important)},
        )
        record = await self.gateway.get(Notification, notification_id)
        return bool(record.is_important)
