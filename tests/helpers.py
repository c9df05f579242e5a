import json
from datetime import datetime, timezone
from pathlib import Path

from usage_ledger.models import LedgerEntry, UsageEvent


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def usage_record(
    timestamp,
    input_tokens=100,
    output_tokens=50,
    cache_creation=None,
    cache_read=None,
    model="claude-sonnet-4-20250514",
    message_id=None,
    request_id=None,
    cost=None,
    session_id=None,
    version=None,
):
    usage = {"input_tokens": input_tokens, "output_tokens": output_tokens}
    if cache_creation is not None:
        usage["cache_creation_input_tokens"] = cache_creation
    if cache_read is not None:
        usage["cache_read_input_tokens"] = cache_read
    message = {"usage": usage}
    if model is not None:
        message["model"] = model
    if message_id is not None:
        message["id"] = message_id
    record = {"timestamp": timestamp, "message": message}
    if request_id is not None:
        record["requestId"] = request_id
    if cost is not None:
        record["costUSD"] = cost
    if session_id is not None:
        record["sessionId"] = session_id
    if version is not None:
        record["version"] = version
    return record


def write_jsonl(path: Path, records):
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def make_entry(
    ts,
    input_tokens=0,
    output_tokens=0,
    cache_creation=0,
    cache_read=0,
    cost=0.0,
    model="claude-sonnet-4",
    session_id="s1",
    project="proj",
    version=None,
    reset_time=None,
):
    event = UsageEvent(
        timestamp=ts,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=cache_creation,
        cache_read_tokens=cache_read,
        model=model,
        version=version,
        usage_limit_reset_time=reset_time,
    )
    return LedgerEntry(
        event=event,
        cost=cost,
        file=Path(f"/data/projects/{project}/{session_id}.jsonl"),
        project=project,
        project_path=project,
        session_id=session_id,
    )
