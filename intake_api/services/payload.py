"""
Payload normalization for the intake webhook.

The voice provider has sent the same information under many names across
versions (call_sid / callSid / call_id, caller / caller_id / phone_number,
goals / professional_goals, transcript as a string or as a list of turns,
identifiers nested under data.* in post-call events). FIELD_ALIASES lists
every path we accept; normalize_intake_payload() walks it once and returns a
NormalizedIntakePayload.
"""

import json
from typing import Any, Dict, Iterable, Optional, Tuple
from intake_api.schemas.intake import NormalizedIntakePayload
from intake_api.services.phone import is_placeholder

Path = Tuple[str, ...]

_DYNAMIC_VARS: Path = ("data", "conversation_initiation_client_data", "dynamic_variables")
_PHONE_CALL: Path = ("data", "metadata", "phone_call")

# First non-empty value wins, so more specific names come first
FIELD_ALIASES: Dict[str, Tuple[Path, ...]] = {
    "session_id": (
        ("call_sid",), ("callSid",), ("CallSid",), ("call_id",), ("callId",),
        ("data", "call_sid"),
        _DYNAMIC_VARS + ("system__call_sid",),
        _PHONE_CALL + ("call_sid",),
    ),
    "phone_number": (
        ("caller",), ("caller_id",), ("callerId",), ("phone_number",), ("phoneNumber",),
        ("from",), ("From",),
        ("data", "caller_id"), ("data", "user_phone"),
        _DYNAMIC_VARS + ("system__caller_id",),
        _PHONE_CALL + ("external_number",),
    ),
    "communication_style": (
        ("communication_style",), ("communicationStyle",),
    ),
    "professional_goals": (
        ("professional_goals",), ("professionalGoals",), ("goals",),
    ),
    "values": (
        ("values",),
    ),
    "partnership_expectations": (
        ("partnership_expectations",), ("partnershipExpectations",),
    ),
    "raw_transcript": (
        ("raw_transcript",), ("rawTranscript",), ("transcript",),
        ("data", "transcript"),
    ),
    "idempotency_key": (
        ("idempotency_key",), ("idempotencyKey",), ("event_id",),
    ),
}

# Keys whose presence marks a body as coming from the voice provider
RECOGNIZED_KEYS = frozenset(
    path[0] for paths in FIELD_ALIASES.values() for path in paths if len(path) == 1
) | {"data"}


def _lookup(payload: Dict[str, Any], path: Path) -> Any:
    node: Any = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def flatten_transcript(value: Any) -> Optional[str]:
    """
    Turn a transcript into plain text.

    Lists of turns like [{"role": "agent", "message": "Hi"}] become
    "agent: Hi" lines; turns without a message are skipped.
    """
    if value is None:
        return None
    if isinstance(value, list):
        lines = []
        for entry in value:
            if isinstance(entry, dict):
                message = entry.get("message")
                if message:
                    lines.append(f"{entry.get('role', 'unknown')}: {message}")
            elif entry:
                lines.append(str(entry))
        return "\n".join(lines) or None
    return _as_text(value)


def _as_text(value: Any) -> Optional[str]:
    """Coerce a field to text: lists join with "; ", dicts become JSON."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        parts = [str(v).strip() for v in value if v is not None and str(v).strip()]
        return "; ".join(parts) or None
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True) if value else None
    text = str(value).strip()
    return text or None


def _first(payload: Dict[str, Any], paths: Iterable[Path]) -> Any:
    for path in paths:
        value = _lookup(payload, path)
        if value not in (None, "", [], {}):
            return value
    return None


def normalize_intake_payload(
    payload: Dict[str, Any],
    idempotency_header: Optional[str] = None,
) -> NormalizedIntakePayload:
    """
    Reduce a raw webhook body to a NormalizedIntakePayload.

    Placeholder phone numbers ("{{system__caller_id}}", "anonymous", ...) are
    treated as absent so the resolver moves on to the session id.

    Args:
        payload: Parsed JSON (or form) body
        idempotency_header: Value of the Idempotency-Key header, preferred over
            any key inside the body

    Returns:
        NormalizedIntakePayload with every alias collapsed
    """
    fields: Dict[str, Optional[str]] = {}
    for field, paths in FIELD_ALIASES.items():
        value = _first(payload, paths)
        if field == "raw_transcript":
            fields[field] = flatten_transcript(value)
        else:
            fields[field] = _as_text(value)

    if is_placeholder(fields["phone_number"]):
        fields["phone_number"] = None

    session_id = fields["session_id"]
    if session_id and session_id.startswith("{"):
        # Unrendered template variable
        fields["session_id"] = None

    if idempotency_header and idempotency_header.strip():
        fields["idempotency_key"] = idempotency_header.strip()

    return NormalizedIntakePayload(**fields)


def looks_like_provider_payload(payload: Dict[str, Any]) -> bool:
    """True if the body carries any field the voice provider is known to send."""
    return isinstance(payload, dict) and any(key in payload for key in RECOGNIZED_KEYS)
