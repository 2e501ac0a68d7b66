"""
Player config (YAML) validation and compatibility rules.

A config is accepted into a game when:
- it parses as YAML (or JSON) and passes `validate_config`
- its worst game state is permitted for the game (testing games allow TESTING)
- it was not written for an Archipelago newer than the one installed

Configs written for an older Archipelago are accepted with a warning.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

import yaml

from catalog import FunctionState, GameCatalog, VersionSpec
from errors import ArtifactValidationError, StateNotPermittedError, VersionIncompatibleError


MAX_NAME_LENGTH = 16

_NAME_PLACEHOLDER_RE = re.compile(r"\{(player|PLAYER|number|NUMBER)\}")
_VERSION_RE = re.compile(r"^\s*(\d+)\.(\d+)(?:\.(\d+))?")

_STATE_WORDING = {
    FunctionState.SUPPORT: "a support entry",
    FunctionState.TESTING: "still in testing",
    FunctionState.BROKEN: "known to be broken",
}


@dataclass(frozen=True)
class ConfigData:
    names: List[str]
    games: List[str]
    description: str
    data: str
    version: Optional[VersionSpec] = None
    weights: Dict[str, float] = field(default_factory=dict)


def compare_version(lhs: VersionSpec, rhs: VersionSpec) -> int:
    """
    0 if equal; -1 if `lhs` is older than `rhs`; 1 if `lhs` is newer.
    """
    for a, b in zip(lhs[:3], rhs[:3]):
        if a != b:
            return 1 if a > b else -1
    return 0


def parse_version(value: Any) -> Optional[VersionSpec]:
    """
    Raises:
        ArtifactValidationError: a list/tuple version with non-numeric parts
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)) and len(value) >= 2:
        try:
            parts = [int(v) for v in value[:3]]
        except (TypeError, ValueError):
            raise ArtifactValidationError("Invalid required version")
        while len(parts) < 3:
            parts.append(0)
        return (parts[0], parts[1], parts[2])
    m = _VERSION_RE.match(str(value))
    if not m:
        return None
    return (int(m.group(1)), int(m.group(2)), int(m.group(3) or 0))


def format_version(version: Optional[VersionSpec]) -> str:
    return ".".join(str(v) for v in version) if version else "unknown"


def _load_documents(text: str) -> List[Any]:
    """One entry per `---` separated document; empty documents are dropped."""
    try:
        return [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as yaml_error:
        try:
            return [json.loads(text)]
        except ValueError:
            raise ArtifactValidationError(f"Not valid YAML: {yaml_error}") from yaml_error


def _validate_name(name: Any) -> str:
    parsed = _NAME_PLACEHOLDER_RE.sub("###", str(name))
    if len(parsed) > MAX_NAME_LENGTH:
        raise ArtifactValidationError("Name too long")
    if len(parsed) == 0:
        raise ArtifactValidationError("Name is zero-length")
    return parsed


def _validate_document(doc: Any, catalog: GameCatalog) -> Tuple[List[str], Dict[str, float], Any, Optional[VersionSpec]]:
    if not isinstance(doc, dict):
        raise ArtifactValidationError("The document is not a mapping of settings")

    raw_name = doc.get("name")
    if raw_name is None:
        raise ArtifactValidationError("Name missing")
    if isinstance(raw_name, dict):
        names = [_validate_name(n) for n in raw_name.keys()]
    else:
        names = [_validate_name(raw_name)]
    if not names:
        raise ArtifactValidationError("Name missing")

    raw_game = doc.get("game")
    weights: Dict[str, float] = {}
    if raw_game is None:
        raise ArtifactValidationError("No game defined")
    if isinstance(raw_game, dict):
        for game, weight in raw_game.items():
            game = str(game)
            if not catalog.knows(game):
                raise ArtifactValidationError(f"Game {game} not in valid game list")
            try:
                weights[game] = float(weight or 0)
            except (TypeError, ValueError):
                raise ArtifactValidationError(f"Weight for game {game} is not a number")
            if weights[game] == 0:
                continue
            if doc.get(game) is None:
                raise ArtifactValidationError(f"Settings not defined for game {game}")
        if not any(weights.values()):
            raise ArtifactValidationError("No game has a non-zero weight")
    else:
        game = str(raw_game)
        if not catalog.knows(game):
            raise ArtifactValidationError(f"Game {game} not in valid game list")
        if doc.get(game) is None:
            raise ArtifactValidationError(f"Settings not defined for game {game}")
        weights[game] = 1.0

    requires = doc.get("requires")
    version = parse_version(requires.get("version")) if isinstance(requires, dict) else None
    return names, weights, doc.get("description"), version


def validate_config(text: str, catalog: GameCatalog) -> ConfigData:
    """
    Parse and sanity-check a player config.

    A file may hold several `---` separated player documents (one slot each).
    Every document is checked; names and games are merged, the first
    description wins and the newest required version is kept.

    Raises:
        ArtifactValidationError: with a short, user-facing reason
    """
    if not text or not text.strip():
        raise ArtifactValidationError("The file is empty")

    docs = _load_documents(text)
    if not docs:
        raise ArtifactValidationError("The document is not a mapping of settings")

    names: List[str] = []
    weights: Dict[str, float] = {}
    description = None
    version: Optional[VersionSpec] = None
    for doc in docs:
        doc_names, doc_weights, doc_description, doc_version = _validate_document(doc, catalog)
        names.extend(doc_names)
        for game, weight in doc_weights.items():
            weights[game] = max(weights.get(game, 0.0), weight)
        if description is None:
            description = doc_description
        if doc_version is not None and (version is None or compare_version(doc_version, version) > 0):
            version = doc_version

    return ConfigData(
        names=names,
        games=list(weights.keys()),
        description=str(description or "No description"),
        data=text,
        version=version,
        weights=weights,
    )


def worst_state(games: Iterable[str], catalog: GameCatalog) -> FunctionState:
    """Unknown games count as BROKEN."""
    worst = FunctionState.PLAYABLE
    for game in games:
        state = catalog.state_of(game)
        if state is None:
            return FunctionState.BROKEN
        worst = max(worst, state)
    return worst


def permitted_states(test_game: bool) -> FrozenSet[FunctionState]:
    states = {FunctionState.PLAYABLE, FunctionState.SUPPORT}
    if test_game:
        states.add(FunctionState.TESTING)
    return frozenset(states)


def check_compatibility(
    version: Optional[VersionSpec],
    state: FunctionState,
    engine_version: Optional[VersionSpec],
    permitted: FrozenSet[FunctionState],
) -> Optional[str]:
    """
    Returns a cautionary note for configs written for an older engine, else None.

    Raises:
        StateNotPermittedError: a game in the config is not allowed in this game
        VersionIncompatibleError: the config targets a newer engine
    """
    if state not in permitted:
        wording = _STATE_WORDING.get(state, state.name.lower())
        raise StateNotPermittedError(
            f"This config includes a game that is {wording} and can't be used in this game."
        )

    if version is None or engine_version is None:
        return None

    cmp = compare_version(version, engine_version)
    if cmp > 0:
        raise VersionIncompatibleError(
            f"This config is for Archipelago version {format_version(version)}, which is newer than "
            f"the Archipelago version in use ({format_version(engine_version)}). "
            "This would cause generation to fail."
        )
    if cmp < 0:
        return (
            f"Please be advised that this config is for an older version of Archipelago "
            f"({format_version(version)}), which may cause generation issues."
        )
    return None


def split_names(names: Iterable[str]) -> Tuple[str, ...]:
    """Names with placeholders can't be matched against output files; keep the rest."""
    return tuple(n for n in names if "###" not in n and n)
