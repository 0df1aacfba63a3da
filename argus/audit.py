"""
Argus Escrow — Audit Event Listeners
Records every state change of PaymentRecord and WithdrawalQueueEntry in the
immutable AuditLog table using SQLAlchemy mapper events.

Rows are written on the flushing connection, so an audit entry commits or
rolls back together with the change it describes.
"""
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import event, inspect

from argus.encryption import EncryptedString, mask_address

logger = logging.getLogger("argus.audit")


def _serialize_value(value):
    """Convert a value to a JSON-serializable format."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):  # Enum
        return value.value
    return value if isinstance(value, (int, float, bool, str)) else str(value)


def _masked_columns(mapper) -> set[str]:
    return {
        attr.key
        for attr in mapper.column_attrs
        if isinstance(attr.columns[0].type, EncryptedString)
    }


def _render(key: str, value, masked: set[str]):
    if key in masked and value:
        return mask_address(value)
    return _serialize_value(value)


def _get_changes(instance) -> dict:
    """
    Changed column attributes as {"field": {"old": ..., "new": ...}}.
    Encrypted columns are masked.
    """
    insp = inspect(instance)
    masked = _masked_columns(insp.mapper)
    changes = {}

    for attr in insp.mapper.column_attrs:
        hist = insp.attrs[attr.key].history
        if hist.has_changes():
            old_val = hist.deleted[0] if hist.deleted else None
            new_val = hist.added[0] if hist.added else None
            changes[attr.key] = {
                "old": _render(attr.key, old_val, masked),
                "new": _render(attr.key, new_val, masked),
            }

    return changes


def _get_snapshot(instance) -> dict:
    """Current column values of the instance, encrypted columns masked."""
    insp = inspect(instance)
    masked = _masked_columns(insp.mapper)
    return {
        attr.key: _render(attr.key, getattr(instance, attr.key, None), masked)
        for attr in insp.mapper.column_attrs
    }


def _write_audit_log(connection, action: str, target, changes: dict, snapshot: dict) -> None:
    from argus.models import AuditLog

    table_name = target.__tablename__
    connection.execute(
        AuditLog.__table__.insert().values(
            action=action,
            table_name=table_name,
            record_id=str(target.id),
            changes=json.dumps(changes, default=str),
            snapshot=json.dumps(snapshot, default=str),
        )
    )
    logger.debug(
        "📝 Audit: %s on %s [%s] — %d field(s) changed",
        action, table_name, target.id, len(changes),
    )


def _after_insert(mapper, connection, target):
    _write_audit_log(connection, "INSERT", target, {}, _get_snapshot(target))


def _after_update(mapper, connection, target):
    changes = _get_changes(target)
    if not changes:
        return
    _write_audit_log(connection, "UPDATE", target, changes, _get_snapshot(target))


def register_audit_listeners():
    """
    Attach after_insert/after_update listeners to the payout models.
    Safe to call more than once.
    """
    from argus.models import PaymentRecord, WithdrawalQueueEntry

    for model in (PaymentRecord, WithdrawalQueueEntry):
        for name, fn in (("after_insert", _after_insert), ("after_update", _after_update)):
            if not event.contains(model, name, fn):
                event.listen(model, name, fn)

    logger.info("✅ Audit event listeners registered for PaymentRecord and WithdrawalQueueEntry")
