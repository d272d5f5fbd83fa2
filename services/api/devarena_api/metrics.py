from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from devarena_api.models import BATTLE_STATUSES, Battle


_LOCK = Lock()
_HTTP_REQUESTS: Counter[tuple[str, str, str]] = Counter()
_HTTP_LATENCY_BUCKETS_S: tuple[float, ...] = (
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
)
_HTTP_LATENCY_BINS: dict[tuple[str, str], list[int]] = {}
_HTTP_LATENCY_SUM_S: dict[tuple[str, str], float] = {}
_HTTP_LATENCY_COUNT: dict[tuple[str, str], int] = {}

# (outcome, error code)
_BATTLE_OUTCOMES: Counter[tuple[str, str]] = Counter()
_NOTIFICATIONS: Counter[str] = Counter()


def observe_http_request(
    *,
    path: str,
    method: str,
    status: str,
    duration_ms: float | None = None,
) -> None:
    key = (str(path), str(method), str(status))
    latency_key = (str(path), str(method))
    dur_s = max(0.0, float(duration_ms) / 1000.0) if duration_ms is not None else None

    with _LOCK:
        _HTTP_REQUESTS[key] += 1
        if dur_s is None:
            return
        bins = _HTTP_LATENCY_BINS.get(latency_key)
        if bins is None:
            bins = [0 for _ in range(len(_HTTP_LATENCY_BUCKETS_S) + 1)]
            _HTTP_LATENCY_BINS[latency_key] = bins

        idx = len(_HTTP_LATENCY_BUCKETS_S)
        for i, edge in enumerate(_HTTP_LATENCY_BUCKETS_S):
            if dur_s <= float(edge):
                idx = i
                break
        bins[idx] += 1
        _HTTP_LATENCY_SUM_S[latency_key] = _HTTP_LATENCY_SUM_S.get(latency_key, 0.0) + dur_s
        _HTTP_LATENCY_COUNT[latency_key] = _HTTP_LATENCY_COUNT.get(latency_key, 0) + 1


def record_battle_outcome(outcome: str, *, code: str = "") -> None:
    with _LOCK:
        _BATTLE_OUTCOMES[(str(outcome), str(code))] += 1


def record_notification(result: str, count: int = 1) -> None:
    if count <= 0:
        return
    with _LOCK:
        _NOTIFICATIONS[str(result)] += int(count)


def battle_outcome_count(outcome: str) -> int:
    with _LOCK:
        return sum(v for (o, _), v in _BATTLE_OUTCOMES.items() if o == outcome)


def _snapshot_http() -> list[tuple[tuple[str, str, str], int]]:
    with _LOCK:
        return list(_HTTP_REQUESTS.items())


def _snapshot_latency() -> list[tuple[tuple[str, str], list[int], float, int]]:
    with _LOCK:
        return [
            (
                key,
                list(bins),
                float(_HTTP_LATENCY_SUM_S.get(key, 0.0)),
                int(_HTTP_LATENCY_COUNT.get(key, 0)),
            )
            for key, bins in _HTTP_LATENCY_BINS.items()
        ]


def _fmt_labels(**labels: str) -> str:
    def esc(value: str) -> str:
        return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')

    parts = [f'{k}="{esc(v)}"' for k, v in labels.items()]
    return "{" + ",".join(parts) + "}" if parts else ""


def _render_series(
    *,
    name: str,
    kind: str,
    help_text: str,
    rows: Iterable[tuple[dict[str, str], int]],
) -> str:
    lines: list[str] = [
        f"# HELP {name} {help_text}",
        f"# TYPE {name} {kind}",
    ]
    for labels, value in rows:
        lines.append(f"{name}{_fmt_labels(**labels)} {int(value)}")
    return "\n".join(lines) + "\n"


def _render_histogram(
    *,
    name: str,
    help_text: str,
    buckets: Iterable[float],
    rows: Iterable[tuple[dict[str, str], list[int], float, int]],
) -> str:
    lines: list[str] = [
        f"# HELP {name} {help_text}",
        f"# TYPE {name} histogram",
    ]
    bucket_edges = [float(b) for b in buckets]
    for labels, bin_counts, sum_s, count in rows:
        cumulative = 0
        for i, edge in enumerate(bucket_edges):
            cumulative += int(bin_counts[i])
            lines.append(f"{name}_bucket{_fmt_labels(**labels, le=str(edge))} {cumulative}")
        cumulative += int(bin_counts[len(bucket_edges)])
        lines.append(f"{name}_bucket{_fmt_labels(**labels, le='+Inf')} {cumulative}")
        lines.append(f"{name}_sum{_fmt_labels(**labels)} {float(sum_s):.6f}")
        lines.append(f"{name}_count{_fmt_labels(**labels)} {int(count)}")
    return "\n".join(lines) + "\n"


def render_prometheus_metrics(*, db: Session) -> str:
    out: list[str] = []

    out.append(
        _render_series(
            name="devarena_http_requests_total",
            kind="counter",
            help_text="Total HTTP requests processed by this API process.",
            rows=[
                ({"path": path, "method": method, "status": status}, count)
                for (path, method, status), count in sorted(_snapshot_http())
            ],
        )
    )
    out.append(
        _render_histogram(
            name="devarena_http_request_duration_seconds",
            help_text="HTTP request duration (seconds) by route template and method (in-process).",
            buckets=_HTTP_LATENCY_BUCKETS_S,
            rows=[
                ({"path": path, "method": method}, bins, sum_s, count)
                for ((path, method), bins, sum_s, count) in sorted(_snapshot_latency())
            ],
        )
    )

    with _LOCK:
        outcomes = sorted(_BATTLE_OUTCOMES.items())
        notifications = sorted(_NOTIFICATIONS.items())
    out.append(
        _render_series(
            name="devarena_battle_runs_total",
            kind="counter",
            help_text="Battle executions finished by this process, by outcome and error code.",
            rows=[({"outcome": o, "code": c}, n) for (o, c), n in outcomes],
        )
    )
    out.append(
        _render_series(
            name="devarena_notifications_total",
            kind="counter",
            help_text="Result emails processed by this process, by result.",
            rows=[({"result": r}, n) for r, n in notifications],
        )
    )

    counts = dict(
        db.execute(select(Battle.status, func.count(Battle.id)).group_by(Battle.status)).all()
    )
    out.append(
        _render_series(
            name="devarena_battles",
            kind="gauge",
            help_text="Battle rows by status.",
            rows=[({"status": s}, int(counts.get(s, 0) or 0)) for s in BATTLE_STATUSES],
        )
    )
    return "\n".join(out)
