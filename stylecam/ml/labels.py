import json
import logging
from pathlib import Path
from typing import Iterable, Iterator, Tuple, Union

from stylecam.core.errors import LoadFailure
from stylecam.core.readiness import MODELS

logger = logging.getLogger(__name__)


class LabelCatalog:
    """Ordered, immutable class names. Index i names classifier output i."""

    def __init__(self, labels: Iterable[str]):
        self._labels: Tuple[str, ...] = tuple(str(label) for label in labels)

    @property
    def labels(self) -> Tuple[str, ...]:
        return self._labels

    def __len__(self) -> int:
        return len(self._labels)

    def __getitem__(self, index: int) -> str:
        return self._labels[index]

    def __iter__(self) -> Iterator[str]:
        return iter(self._labels)

    def __repr__(self) -> str:
        return f"LabelCatalog({len(self._labels)} labels)"


def load_label_catalog(path: Union[str, Path]) -> LabelCatalog:
    """
    Load labels from a metadata JSON file.

    Accepts either {"labels": [...]} (Teachable-Machine style metadata) or a
    bare JSON list. Any problem is reported as LoadFailure for the models
    subsystem.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise LoadFailure(MODELS, e, f"could not read label metadata {path}: {e}") from e

    labels = data.get("labels") if isinstance(data, dict) else data
    if not isinstance(labels, list) or not labels:
        raise LoadFailure(MODELS, message=f"no 'labels' list in {path}")
    if not all(isinstance(label, str) and label for label in labels):
        raise LoadFailure(MODELS, message=f"labels in {path} must be non-empty strings")

    catalog = LabelCatalog(labels)
    logger.info("[Labels] Metadata loaded: %d labels from %s", len(catalog), path)
    return catalog
