# src/sealed_chat/scripts/daily.py
"""
Cron job for message-store maintenance.

For deployments that run with CLEANUP_ENABLED=false and schedule cleanup
externally instead of using the in-process MaintenanceWorker.
"""

from sqlalchemy.orm import Session

from sealed_chat.db.session import SessionLocal
from sealed_chat.services.messages import MessageService


def remove_orphaned_messages(db: Session) -> int:
    """Delete messages whose sender or recipient no longer exists.

    Args:
        db: Database session
    """
    removed = MessageService.cleanup_orphaned_messages(db)
    print(f"Removed {removed} orphaned messages")
    return removed


if __name__ == "__main__":
    db = SessionLocal()
    try:
        remove_orphaned_messages(db)
    finally:
        db.close()
