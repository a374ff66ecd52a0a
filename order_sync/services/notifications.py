"""
In-app notifications for applied stage advances.

One record per organization member. A failure for one member is logged
and counted; it never undoes the advance.
"""

from order_sync.core.database import Database
from order_sync.core.exceptions import NotificationFailure, StorageFailure
from order_sync.core.logging import get_logger
from order_sync.core.models import Notification
from order_sync.core.stages import stage_descriptor

log = get_logger(__name__)

NOTIFICATION_TYPE = "stage_advanced"


class NotificationFanout:
    """Notify every member of an organization about an order advance."""

    def __init__(self, db: Database):
        self.db = db

    def notify(
        self,
        organization_id: str,
        order_id: str,
        new_stage: int,
        rationale: str,
    ) -> tuple[int, int]:
        """
        Insert one notification per member.

        Returns:
            (sent, failed) counts
        """
        stage = stage_descriptor(new_stage)

        try:
            members = self.db.list_members(organization_id)
        except StorageFailure as e:
            log.error("notification_members_unavailable", organization_id=organization_id, error=str(e))
            return 0, 1

        sent = 0
        failed = 0
        for member in members:
            notification = Notification(
                organization_id=organization_id,
                user_id=member.user_id,
                type=NOTIFICATION_TYPE,
                title=f"Order {order_id} advanced",
                message=f"Order {order_id} moved to {stage.name}: {rationale}",
                data={
                    "order_id": order_id,
                    "stage": stage.id,
                    "stage_name": stage.name,
                    "rationale": rationale,
                },
            )
            try:
                self._send(notification)
                sent += 1
            except NotificationFailure as e:
                failed += 1
                log.warning(
                    "notification_failed",
                    order_id=order_id,
                    user_id=member.user_id,
                    error=str(e),
                )

        log.info("notifications_sent", order_id=order_id, stage=stage.id, sent=sent, failed=failed)
        return sent, failed

    def _send(self, notification: Notification) -> None:
        try:
            self.db.insert_notification(notification)
        except StorageFailure as e:
            raise NotificationFailure(str(e)) from e
