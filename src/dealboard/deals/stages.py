"""Canonical deal stages and the classifier for freeform stage labels.

Rows reach the board with whatever stage label was written at the time:
English identifiers, Turkish display labels, legacy values such as
``proposal_sent`` or ``closed_won``. Everything the board renders goes
through classify_stage() first, so a deal is always in exactly one of the
five canonical columns.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Stage(str, Enum):
    """Canonical pipeline stages in column order."""

    LEAD = "lead"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    WON = "won"
    LOST = "lost"


class StageConfig(BaseModel):
    """Display label and known stored spellings for one canonical stage.

    The first entry of ``db_values`` is the spelling written back to the
    database.
    """

    model_config = ConfigDict(frozen=True)

    stage: Stage
    label: str
    db_values: tuple[str, ...]


STAGE_CONFIGS: tuple[StageConfig, ...] = (
    StageConfig(stage=Stage.LEAD, label="Aday", db_values=("lead", "aday")),
    StageConfig(
        stage=Stage.PROPOSAL,
        label="Teklif Gönderildi",
        db_values=("proposal", "proposal_sent", "teklif", "teklif gönderildi"),
    ),
    StageConfig(
        stage=Stage.NEGOTIATION,
        label="Görüşme",
        db_values=("negotiation", "görüşme", "meeting"),
    ),
    StageConfig(
        stage=Stage.WON,
        label="Kazanıldı",
        db_values=("won", "kazanıldı", "closed_won"),
    ),
    StageConfig(
        stage=Stage.LOST,
        label="Kaybedildi",
        db_values=("lost", "kaybedildi", "closed_lost"),
    ),
)

DEFAULT_STAGE: Stage = STAGE_CONFIGS[0].stage


def _fold(value: str) -> str:
    # Dotted and dotless I both fold to plain "i" so "KAZANILDI" matches "kazanıldı".
    return value.replace("İ", "i").lower().replace("ı", "i")


_LOOKUP: dict[str, Stage] = {}
for _config in STAGE_CONFIGS:
    for _db_value in _config.db_values:
        _LOOKUP.setdefault(_fold(_db_value), _config.stage)


def classify_stage(value: str | None) -> Stage:
    """Map any stored stage label onto a canonical Stage.

    Matching is exact after case folding. None, empty and unrecognised
    labels fall back to the first declared stage (lead).
    """
    if not value:
        return DEFAULT_STAGE
    return _LOOKUP.get(_fold(value), DEFAULT_STAGE)


def get_stage_config(stage: Stage) -> StageConfig:
    for config in STAGE_CONFIGS:
        if config.stage == stage:
            return config
    raise KeyError(stage)


def db_stage(stage: Stage) -> str:
    """Stored spelling for a canonical stage."""
    return get_stage_config(stage).db_values[0]


def stage_label(stage: Stage) -> str:
    """Display label for a canonical stage."""
    return get_stage_config(stage).label


def parse_stage(value: str) -> Stage | None:
    """Strict lookup of a canonical stage identifier, None if not one."""
    try:
        return Stage(value)
    except ValueError:
        return None


class InvalidStageError(ValueError):
    """A stage identifier that is not one of the canonical stages."""

    def __init__(self, value: str) -> None:
        super().__init__(f"Invalid stage: {value}")
        self.value = value


def require_stage(value: str) -> Stage:
    """Like parse_stage() but raises InvalidStageError."""
    stage = parse_stage(value)
    if stage is None:
        raise InvalidStageError(value)
    return stage
