"""Call history rows as shown in the calls list."""


def format_duration(seconds) -> str:
    """Format whole seconds as m:ss (e.g. 75 -> "1:15")."""
    if not seconds or seconds < 0:
        return "0:00"
    seconds = int(seconds)
    return f"{seconds // 60}:{seconds % 60:02d}"


def summarize_call(row: dict, user_id: str) -> dict:
    """Reduce a call_logs row to what the viewing user cares about.

    A declined call is "missed" from the recipient's side only; the caller
    sees it as declined.
    """
    outgoing = row.get("caller_id") == user_id
    status = row.get("status", "")
    if status == "declined" and not outgoing:
        status = "missed"
    duration = row.get("duration") or 0
    return {
        "call_id": row.get("id"),
        "direction": "outgoing" if outgoing else "incoming",
        "peer_id": row.get("recipient_id") if outgoing else row.get("caller_id"),
        "call_type": row.get("call_type", "voice"),
        "status": status,
        "started_at": row.get("started_at"),
        "duration": format_duration(duration) if duration else "",
    }


def format_history(rows: list[dict], user_id: str) -> str:
    lines = []
    for row in rows:
        s = summarize_call(row, user_id)
        arrow = "↗" if s["direction"] == "outgoing" else "↙"
        line = f"{arrow} {s['started_at'] or '-':<32} {s['call_type']:<6} {s['status']:<9} {s['peer_id']}"
        if s["duration"]:
            line += f" • {s['duration']}"
        lines.append(line)
    return "\n".join(lines)
