"""Data structures for declared gauges and their samples."""
from dataclasses import dataclass, field
from typing import Dict, Tuple


@dataclass(frozen=True)
class MetricSpec:
    """A declared gauge: name, help text and ordered label names."""
    name: str
    help: str
    label_names: Tuple[str, ...] = field(default_factory=tuple)


@dataclass
class MetricSample:
    """A single gauge value with labels."""
    labels: Dict[str, str]
    value: float

    def label_key(self, label_names: Tuple[str, ...]) -> Tuple[str, ...]:
        """Label values ordered by the declared label names."""
        if set(self.labels) != set(label_names):
            raise ValueError(
                f"Labels {sorted(self.labels)} do not match declared {list(label_names)}"
            )
        return tuple(str(self.labels[name]) for name in label_names)
