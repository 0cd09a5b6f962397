"""
fantasyyc/entities.py - Tracked startups and the rarity multiplier table.

Entity ids are 1-indexed and match the startupId stored on each card in the
NFT contract. The finalize call takes one slot per id, so the table length
fixes the score vector length.
"""

from dataclasses import dataclass
from enum import IntEnum


class Rarity(IntEnum):
    """Card rarity, in the order the NFT contract encodes it (uint8)."""

    COMMON = 0
    RARE = 1
    EPIC = 2
    EPIC_RARE = 3
    LEGENDARY = 4

    @property
    def label(self) -> str:
        return RARITY_LABELS[self]

    @classmethod
    def from_label(cls, label: str) -> "Rarity":
        key = label.replace(" ", "").replace("_", "").lower()
        for rarity, name in RARITY_LABELS.items():
            if name.lower() == key:
                return rarity
        raise ValueError(f"Unknown rarity: {label!r}")


RARITY_LABELS = {
    Rarity.COMMON: "Common",
    Rarity.RARE: "Rare",
    Rarity.EPIC: "Epic",
    Rarity.EPIC_RARE: "EpicRare",
    Rarity.LEGENDARY: "Legendary",
}

DEFAULT_MULTIPLIERS: dict[Rarity, int] = {
    Rarity.COMMON: 1,
    Rarity.RARE: 3,
    Rarity.EPIC: 5,
    Rarity.EPIC_RARE: 8,
    Rarity.LEGENDARY: 10,
}


@dataclass(frozen=True)
class TrackedEntity:
    """A startup whose posts are scored."""

    id: int
    name: str
    handle: str  # content-source username, no leading @
    rarity: Rarity = Rarity.COMMON


DEFAULT_ENTITIES: tuple[TrackedEntity, ...] = (
    TrackedEntity(1, "Openclaw", "openclaw", Rarity.LEGENDARY),
    TrackedEntity(2, "Lovable", "lovable_dev", Rarity.LEGENDARY),
    TrackedEntity(3, "Cursor", "cursor_ai", Rarity.LEGENDARY),
    TrackedEntity(4, "OpenAI", "OpenAI", Rarity.EPIC_RARE),
    TrackedEntity(5, "Anthropic", "AnthropicAI", Rarity.EPIC_RARE),
    TrackedEntity(6, "Browser Use", "browser_use", Rarity.EPIC),
    TrackedEntity(7, "Dedalus Labs", "dedaluslabs", Rarity.EPIC),
    TrackedEntity(8, "Autumn", "autumnpricing", Rarity.EPIC),
    TrackedEntity(9, "Axiom", "axiom_xyz", Rarity.EPIC),
    TrackedEntity(10, "Multifactor", "multifactor_io", Rarity.RARE),
    TrackedEntity(11, "Dome", "domeapi", Rarity.RARE),
    TrackedEntity(12, "GrazeMate", "grazemate", Rarity.RARE),
    TrackedEntity(13, "Tornyol Systems", "tornyolsystems", Rarity.RARE),
    TrackedEntity(14, "Pocket", "heypocket", Rarity.COMMON),
    TrackedEntity(15, "Caretta", "caretta_ai", Rarity.COMMON),
    TrackedEntity(16, "AxionOrbital Space", "axionorbital", Rarity.COMMON),
    TrackedEntity(17, "Freeport Markets", "freeportmarkets", Rarity.COMMON),
    TrackedEntity(18, "Ruvo", "ruvo_app", Rarity.COMMON),
    TrackedEntity(19, "Lightberry", "lightberryai", Rarity.COMMON),
)


class EntityTable:
    """Lookup over the tracked entities and the multiplier table."""

    def __init__(
        self,
        entities: tuple[TrackedEntity, ...] | list[TrackedEntity] = DEFAULT_ENTITIES,
        multipliers: dict[Rarity, int] | None = None,
    ):
        ids = [e.id for e in entities]
        if sorted(ids) != list(range(1, len(ids) + 1)):
            raise ValueError(f"Entity ids must be 1..N without gaps, got {sorted(ids)}")
        self._by_id = {e.id: e for e in entities}
        self.multipliers = dict(DEFAULT_MULTIPLIERS)
        if multipliers:
            self.multipliers.update(multipliers)

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self):
        return iter(self._by_id[i] for i in sorted(self._by_id))

    def get(self, entity_id: int) -> TrackedEntity | None:
        return self._by_id.get(entity_id)

    def multiplier(self, rarity: Rarity) -> int:
        return self.multipliers.get(rarity, 1)

    def score_vector(self, totals: dict[int, float]) -> list[int]:
        """Fixed-length vector indexed by entity id - 1. Missing ids are 0."""
        return [max(0, int(totals.get(i, 0))) for i in range(1, len(self) + 1)]
