from __future__ import annotations

from typing import List

from .metrics import list_counters, list_counters_labelled, list_gauges


PREFIX = "shadowswap_"


def _escape_label_value(val: str) -> str:
    # Exposition format needs backslashes, quotes and newlines escaped
    return val.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


def export_text() -> str:
    """Render in-process metrics in Prometheus text exposition format.

    Counters with a zero value are skipped; gauges are always emitted since
    zero is a meaningful reading (e.g. an empty pending book).
    """
    lines: List[str] = []
    emitted_type: set[str] = set()

    def _type_line(name: str, kind: str) -> None:
        if name not in emitted_type:
            lines.append(f"# TYPE {name} {kind}")
            emitted_type.add(name)

    for name, val in list_counters():
        if val == 0:
            continue
        full = PREFIX + name
        _type_line(full, "counter")
        lines.append(f"{full} {val}")

    for name, labels, val in list_counters_labelled():
        if val == 0:
            continue
        full = PREFIX + name
        _type_line(full, "counter")
        label_str = ",".join(f"{k}=\"{_escape_label_value(v)}\"" for k, v in labels)
        lines.append(f"{full}{{{label_str}}} {val}")

    for name, val in list_gauges():
        full = PREFIX + name
        _type_line(full, "gauge")
        lines.append(f"{full} {val}")

    return "\n".join(lines) + ("\n" if lines else "")
