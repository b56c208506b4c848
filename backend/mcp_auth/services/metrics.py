"""プロセス内カウンタと観測値のレコーダー。

OAuth フローの成否（oauth_flow_success_total / oauth_flow_failure_total）と
セッション再構築（mcp_session_reconstruct_total / _seconds）を記録し、
/health/sessions で公開する。
"""

from collections import defaultdict
from typing import Dict, FrozenSet, List, Optional, Tuple

LabelKey = FrozenSet[Tuple[str, str]]
Labels = Optional[Dict[str, str]]


def _labels_key(labels: Labels) -> LabelKey:
    return frozenset((str(k), str(v)) for k, v in (labels or {}).items())


def _render(name: str, labels: LabelKey) -> str:
    """`name{k=v,...}` 形式の表示名。"""
    if not labels:
        return name
    return "%s{%s}" % (name, ",".join(f"{k}={v}" for k, v in sorted(labels)))


class MetricsRecorder:
    """レジストリとインスタンスマネージャで共有するレコーダー。"""

    def __init__(self) -> None:
        self._counters: Dict[Tuple[str, LabelKey], int] = defaultdict(int)
        self._observations: Dict[Tuple[str, LabelKey], List[float]] = defaultdict(list)

    def increment(self, name: str, labels: Labels = None, value: int = 1) -> None:
        self._counters[(name, _labels_key(labels))] += value

    def observe(self, name: str, value: float, labels: Labels = None) -> None:
        """所要秒数などの観測値を追加する。"""
        self._observations[(name, _labels_key(labels))].append(value)

    def get_counter(self, name: str, labels: Labels = None) -> int:
        """ラベルが完全一致するカウンタ値。なければ 0。"""
        return self._counters.get((name, _labels_key(labels)), 0)

    def get_observations(self, name: str, labels: Labels = None) -> List[float]:
        return list(self._observations.get((name, _labels_key(labels)), []))

    def snapshot(self) -> Dict[str, object]:
        """カウンタと観測値の要約（件数・最大・平均）を返す。"""
        counters = {_render(name, labels): value for (name, labels), value in self._counters.items()}
        summaries = {}
        for (name, labels), values in self._observations.items():
            if values:
                summaries[_render(name, labels)] = {
                    "count": len(values),
                    "max": round(max(values), 6),
                    "mean": round(sum(values) / len(values), 6),
                }
        return {"counters": counters, "observations": summaries}
