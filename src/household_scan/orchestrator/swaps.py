from __future__ import annotations

from typing import Any, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple, Union

from ..domain.models import Flag, Preferences, ProductScore, SwapSuggestion
from ..logging import get_logger


LOG = get_logger("scan-swaps")

MAX_SUGGESTIONS = 4

BASELINE_SUGGESTION = SwapSuggestion(
    title="Microfiber cloth + warm soapy water",
    why="Often sufficient for many surfaces and reduces chemical load.",
)

# (trigger flag ids, suggestions) in priority order; a row fires when any id is present.
SWAP_TABLE: Tuple[Tuple[FrozenSet[str], Tuple[SwapSuggestion, ...]], ...] = (
    (
        frozenset({"contains_bleach"}),
        (
            SwapSuggestion(
                title="Oxygen based cleaner (non chlorine)",
                why="Often effective for whitening and stain removal without chlorine bleach.",
            ),
            SwapSuggestion(
                title="Hydrogen peroxide bathroom cleaner",
                why="Good for bathrooms, with less harsh fumes for many users.",
            ),
        ),
    ),
    (
        frozenset({"contains_fragrance"}),
        (
            SwapSuggestion(
                title="Fragrance free all purpose cleaner",
                why="Reduces scent exposure for sensitive users.",
            ),
            SwapSuggestion(
                title="Fragrance free dish soap or laundry detergent",
                why="Cuts fragrance across common sources.",
            ),
        ),
    ),
    (
        frozenset({"aerosol"}),
        (
            SwapSuggestion(
                title="Pump spray alternative",
                why="Less airborne mist than aerosols.",
            ),
        ),
    ),
    (
        frozenset({"contains_quats"}),
        (
            SwapSuggestion(
                title="Soap based cleaner",
                why="Good everyday option if you prefer to avoid quats.",
            ),
        ),
    ),
    (
        frozenset({"strong_acid", "strong_alkali", "corrosive_warning"}),
        (
            SwapSuggestion(
                title="Milder pH cleaner for routine use",
                why="Use strong products only when needed, keep routine cleaning gentler.",
            ),
        ),
    ),
)


def _flag_ids(flags: Union[ProductScore, Iterable[Any], None]) -> Set[str]:
    if isinstance(flags, ProductScore):
        flags = flags.flags
    ids: Set[str] = set()
    for flag in flags or []:
        if isinstance(flag, Flag):
            ids.add(flag.id)
        elif isinstance(flag, Mapping) and flag.get("id"):
            ids.add(str(flag["id"]))
        elif isinstance(flag, str):
            ids.add(flag)
    return ids


def suggest_swaps(
    flags: Union[ProductScore, Iterable[Any], None],
    preferences: Optional[Preferences] = None,
) -> List[SwapSuggestion]:
    """Alternatives for the active flags, baseline last, at most MAX_SUGGESTIONS.

    ``preferences`` is accepted for call-site symmetry with score_product; the
    table is driven by flag ids only.
    """
    ids = _flag_ids(flags)
    suggestions: List[SwapSuggestion] = []
    for triggers, rows in SWAP_TABLE:
        if ids & triggers:
            suggestions.extend(rows)
    suggestions.append(BASELINE_SUGGESTION)
    trimmed = suggestions[:MAX_SUGGESTIONS]
    if len(suggestions) > MAX_SUGGESTIONS:
        LOG.debug("Trimmed swap suggestions from %d to %d", len(suggestions), MAX_SUGGESTIONS)
    return trimmed
