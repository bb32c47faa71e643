import os

import pytest

import env_validation
from env_validation import EnvironmentError, get_env_bool, get_env_int, validate_environment


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "env.db"))
    for name in list(env_validation.INTEGER_SETTINGS) + ["DEFAULT_USER_GRADE", "FACTS_CATALOG_PATH"]:
        monkeypatch.delenv(name, raising=False)


def test_defaults_are_applied(monkeypatch):
    monkeypatch.setenv("DB_PATH", "")
    validate_environment()
    assert os.environ["DB_PATH"] == "data.db"


def test_invalid_integer_settings_are_reported(monkeypatch):
    monkeypatch.setenv("SEEN_SET_CAPACITY", "lots")
    monkeypatch.setenv("ASSESSMENT_QUESTION_COUNT", "0")
    with pytest.raises(EnvironmentError) as excinfo:
        validate_environment()
    message = str(excinfo.value)
    assert "SEEN_SET_CAPACITY must be an integer" in message
    assert "ASSESSMENT_QUESTION_COUNT must be >= 1" in message


def test_default_grade_must_be_k_to_6(monkeypatch):
    monkeypatch.setenv("DEFAULT_USER_GRADE", "k")
    validate_environment()
    monkeypatch.setenv("DEFAULT_USER_GRADE", "9")
    with pytest.raises(EnvironmentError, match="DEFAULT_USER_GRADE"):
        validate_environment()


def test_missing_catalog_path_is_an_error(monkeypatch, tmp_path):
    monkeypatch.setenv("FACTS_CATALOG_PATH", str(tmp_path / "nope.json"))
    with pytest.raises(EnvironmentError, match="FACTS_CATALOG_PATH"):
        validate_environment()


def test_env_helpers(monkeypatch):
    assert get_env_int("SEEN_SET_CAPACITY") == 100
    assert get_env_int("MASTERY_BONUS_TOKENS") == 50
    monkeypatch.setenv("MASTERY_BONUS_TOKENS", "75")
    assert get_env_int("MASTERY_BONUS_TOKENS") == 75
    monkeypatch.setenv("MASTERY_BONUS_TOKENS", "many")
    assert get_env_int("MASTERY_BONUS_TOKENS") == 50

    monkeypatch.setenv("FEATURE", "yes")
    assert get_env_bool("FEATURE")
    assert not get_env_bool("UNSET_FEATURE")
