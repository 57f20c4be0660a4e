"""Golden datasets and YAML persistence."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from model_canary.evals.models import EntryMetadata, EvaluationCriteria, GoldenDatasetEntry


class GoldenDataset(BaseModel):
    """A named category of golden entries."""

    category: str
    description: str = ""
    entries: list[GoldenDatasetEntry] = Field(default_factory=list)

    # -- YAML persistence ---------------------------------------------------

    def to_yaml(self, path: str | Path) -> None:
        """Serialize the dataset to a YAML file."""
        Path(path).write_text(
            yaml.dump(
                self.model_dump(mode="json"),
                default_flow_style=False,
                sort_keys=False,
            ),
            encoding="utf-8",
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> GoldenDataset:
        """Deserialize a dataset from a YAML file."""
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        return cls.model_validate(data)


def load_golden_datasets(directory: str | Path) -> list[GoldenDataset]:
    """Load all golden datasets from YAML files in *directory*."""
    datasets: list[GoldenDataset] = []
    dir_path = Path(directory)
    if not dir_path.is_dir():
        return datasets
    for yml in sorted(dir_path.glob("*.y*ml")):
        datasets.append(GoldenDataset.from_yaml(yml))
    return datasets


def default_creativity_dataset() -> GoldenDataset:
    return GoldenDataset(
        category="creativity",
        description="Built-in marketing copy sample",
        entries=[
            GoldenDatasetEntry(
                id="creativity-001",
                prompt="Create a compelling marketing message for a new eco-friendly product",
                expected_output=(
                    "Join the green revolution with our innovative eco-friendly solution..."
                ),
                metadata=EntryMetadata(
                    category="creativity",
                    difficulty="medium",
                    agent_type="creative",
                    tags=["marketing", "eco-friendly"],
                ),
                evaluation_criteria=EvaluationCriteria(
                    similarity=0.7,
                    semantic_match=True,
                    factual_accuracy=True,
                    brand_consistency=True,
                ),
            )
        ],
    )
