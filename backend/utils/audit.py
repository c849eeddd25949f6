from models import AuditLog, AuditAction
from datetime import datetime
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

def _jsonable(state: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if state is None:
        return None
    return {
        k: (v.isoformat() if isinstance(v, datetime) else v)
        for k, v in state.items()
        if k not in ("_id", "password_hash")
    }

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.

    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after, "removed": {}, "changed": {}}

    if not after:
        return {"added": {}, "removed": before, "changed": {}}

    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        if key not in before:
            diff["added"][key] = after[key]
        elif key not in after:
            diff["removed"][key] = before[key]
        elif before[key] != after[key]:
            diff["changed"][key] = {"from": before[key], "to": after[key]}

    # Remove empty categories
    return {k: v for k, v in diff.items() if v}

async def create_audit_log(
    store,
    action: AuditAction,
    actor_role: Optional[str] = None,
    actor_id: Optional[str] = None,
    account_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    session=None,
) -> str:
    """Create an audit log entry with an automatic before/after diff.

    With a session the entry is part of the caller's transaction and a write
    failure propagates (aborting the transaction). Without one the audit write
    is best effort and never fails the main operation.
    """
    before = _jsonable(before_state)
    after = _jsonable(after_state)
    diff = calculate_diff(before, after) if before and after else None

    audit_log = AuditLog(
        action=action,
        actor_role=actor_role,
        actor_id=actor_id,
        account_id=account_id,
        resource_type=resource_type,
        resource_id=resource_id,
        before_state=before,
        after_state=after,
        diff=diff or None,
        metadata=metadata,
    )
    doc = audit_log.model_dump()

    if session is not None:
        await store.insert_audit_log(doc, session=session)
        return audit_log.audit_id

    try:
        await store.insert_audit_log(doc)
        logger.info(f"Audit log created: {doc['action']}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        return ""
