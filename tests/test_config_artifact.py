"""Tests for config validation and compatibility rules."""

import pytest

from catalog import FunctionState
from config_artifact import (
    check_compatibility,
    compare_version,
    parse_version,
    permitted_states,
    split_names,
    validate_config,
    worst_state,
)
from errors import ArtifactValidationError, StateNotPermittedError, VersionIncompatibleError

from conftest import ENGINE_VERSION, config_text


@pytest.mark.parametrize(
    "lhs, rhs, expected",
    [
        ((0, 4, 2), (0, 4, 2), 0),
        ((0, 4, 1), (0, 4, 2), -1),
        ((0, 3, 9), (0, 4, 0), -1),
        ((1, 0, 0), (0, 9, 9), 1),
        ((0, 4, 3), (0, 4, 2), 1),
    ],
)
def test_compare_version(lhs, rhs, expected):
    assert compare_version(lhs, rhs) == expected


def test_parse_version_forms():
    assert parse_version("0.4.2") == (0, 4, 2)
    assert parse_version("0.5") == (0, 5, 0)
    assert parse_version([0, 3]) == (0, 3, 0)
    assert parse_version(None) is None
    assert parse_version("latest") is None


def test_non_numeric_version_list_is_a_validation_error(catalog):
    with pytest.raises(ArtifactValidationError, match="Invalid required version"):
        parse_version(["a", "b"])
    text = "name: Alice\ngame: Clique\nrequires:\n  version: [a, b]\nClique:\n  goal: 1\n"
    with pytest.raises(ArtifactValidationError, match="Invalid required version"):
        validate_config(text, catalog)


def test_multi_document_config(catalog):
    text = config_text("Alice", version="0.4.1") + "---\n" + config_text("Bob", game="Hollow Knight")
    data = validate_config(text, catalog)
    assert data.names == ["Alice", "Bob"]
    assert data.games == ["Clique", "Hollow Knight"]
    assert data.version == (0, 4, 2)
    assert data.description == "Alice's settings"

    with pytest.raises(ArtifactValidationError, match="No game defined"):
        validate_config(config_text("Alice") + "---\nname: Bob\n", catalog)


def test_valid_config(catalog):
    data = validate_config(config_text("Alice"), catalog)
    assert data.names == ["Alice"]
    assert data.games == ["Clique"]
    assert data.version == (0, 4, 2)
    assert data.description == "Alice's settings"


def test_missing_game_selector(catalog):
    text = "name: Alice\ndescription: no game here\n"
    with pytest.raises(ArtifactValidationError, match="No game defined"):
        validate_config(text, catalog)


def test_unknown_game(catalog):
    with pytest.raises(ArtifactValidationError, match="not in valid game list"):
        validate_config(config_text("Alice", game="Nonexistent"), catalog)


def test_missing_settings_block(catalog):
    text = "name: Alice\ngame: Clique\n"
    with pytest.raises(ArtifactValidationError, match="Settings not defined for game Clique"):
        validate_config(text, catalog)


def test_name_rules(catalog):
    with pytest.raises(ArtifactValidationError, match="Name missing"):
        validate_config("game: Clique\nClique: {}\n", catalog)
    with pytest.raises(ArtifactValidationError, match="Name too long"):
        validate_config(config_text("A" * 17), catalog)
    # placeholders count as three characters
    data = validate_config(config_text("Player{number}"), catalog)
    assert data.names == ["Player###"]


def test_weighted_games(catalog):
    text = (
        "name: Alice\n"
        "game:\n"
        "  Clique: 1\n"
        "  Hollow Knight: 0\n"
        "Clique:\n"
        "  progression_balancing: 50\n"
    )
    data = validate_config(text, catalog)
    assert data.games == ["Clique", "Hollow Knight"]
    assert data.weights == {"Clique": 1.0, "Hollow Knight": 0.0}


def test_empty_and_non_mapping(catalog):
    with pytest.raises(ArtifactValidationError):
        validate_config("   ", catalog)
    with pytest.raises(ArtifactValidationError):
        validate_config("- just\n- a list\n", catalog)


def test_worst_state(catalog):
    assert worst_state(["Clique"], catalog) == FunctionState.PLAYABLE
    assert worst_state(["Clique", "Pokemon Red and Blue"], catalog) == FunctionState.TESTING
    assert worst_state(["Unknown"], catalog) == FunctionState.BROKEN


def test_testing_games_need_a_testing_game():
    normal = permitted_states(False)
    testing = permitted_states(True)
    assert FunctionState.TESTING not in normal
    assert FunctionState.TESTING in testing
    with pytest.raises(StateNotPermittedError):
        check_compatibility(None, FunctionState.TESTING, ENGINE_VERSION, normal)
    assert check_compatibility(None, FunctionState.TESTING, ENGINE_VERSION, testing) is None


def test_broken_is_never_permitted():
    with pytest.raises(StateNotPermittedError):
        check_compatibility(None, FunctionState.BROKEN, ENGINE_VERSION, permitted_states(True))


def test_newer_config_is_rejected():
    with pytest.raises(VersionIncompatibleError, match="newer than"):
        check_compatibility((0, 5, 0), FunctionState.PLAYABLE, ENGINE_VERSION, permitted_states(False))


def test_older_config_is_accepted_with_warning():
    warning = check_compatibility((0, 3, 0), FunctionState.PLAYABLE, ENGINE_VERSION, permitted_states(False))
    assert "older version" in warning


def test_split_names_drops_placeholders():
    assert split_names(["Alice", "Player###", ""]) == ("Alice",)
