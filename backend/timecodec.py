from datetime import datetime, timezone

from errors import ValidationError


def human_to_epoch(text: str) -> int:
    """Parse an ISO-8601 timestamp into whole epoch seconds.

    A trailing ``Z`` is accepted and a timestamp without an offset is read
    as UTC. Sub-second precision is dropped.
    """
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Timestamp is required")
    value = text.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid timestamp: {text}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.replace(microsecond=0).timestamp())


def epoch_to_human(epoch: int | float) -> str:
    moment = datetime.fromtimestamp(int(epoch), tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.000Z")
