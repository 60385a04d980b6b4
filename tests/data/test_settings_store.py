import json

import pytest

from oloro.core.errors import ValidationError
from oloro.data.kv_store import MemoryKeyValueStore
from oloro.data.settings_store import DEFAULT_SETTINGS, SettingsStore


def test_defaults_when_nothing_stored():
    settings = SettingsStore(MemoryKeyValueStore()).get_settings()
    assert settings == DEFAULT_SETTINGS
    assert settings is not DEFAULT_SETTINGS


def test_old_data_picks_up_new_nested_defaults():
    stored = {"language": "German", "advanced": {"dark_mode": "Dark"}}
    store = MemoryKeyValueStore({"oloro_app_settings": json.dumps(stored)})
    settings = SettingsStore(store).get_settings()

    assert settings["language"] == "German"
    assert settings["advanced"]["dark_mode"] == "Dark"
    assert settings["advanced"]["show_bottom_nav"] is True
    assert settings["notifications"]["daily_digest"] is False


def test_update_settings_persists_and_returns_merged():
    store = MemoryKeyValueStore()
    updated = SettingsStore(store).update_settings({"theme_color": "green", "data_saver": True})
    assert updated["theme_color"] == "green"
    assert SettingsStore(store).get_settings()["data_saver"] is True


def test_update_rejects_unknown_keys():
    settings = SettingsStore(MemoryKeyValueStore())
    with pytest.raises(ValidationError):
        settings.update_settings({"not_a_setting": 1})


def test_vocabulary_add_is_idempotent_and_remove_works():
    settings = SettingsStore(MemoryKeyValueStore())
    assert settings.add_vocabulary_term("Oloro") == ["Oloro"]
    assert settings.add_vocabulary_term("Oloro") == ["Oloro"]
    assert settings.add_vocabulary_term("Gemini") == ["Oloro", "Gemini"]
    assert settings.remove_vocabulary_term("Oloro") == ["Gemini"]
    assert settings.remove_vocabulary_term("missing") == ["Gemini"]
    with pytest.raises(ValidationError):
        settings.add_vocabulary_term("  ")


def test_subscribers_are_notified_immediately_with_changed_keys():
    settings = SettingsStore(MemoryKeyValueStore())
    seen = []
    unsubscribe = settings.subscribe(lambda new, changed: seen.append((new["theme_color"], changed)))

    settings.update_settings({"theme_color": "purple"})
    assert seen == [("purple", {"theme_color"})]

    settings.update_settings({"theme_color": "purple"})
    assert len(seen) == 1

    unsubscribe()
    settings.update_settings({"theme_color": "red"})
    assert len(seen) == 1


def test_failing_subscriber_does_not_block_others():
    settings = SettingsStore(MemoryKeyValueStore())
    seen = []

    def _broken(_new, _changed):
        raise RuntimeError("listener bug")

    settings.subscribe(_broken)
    settings.subscribe(lambda new, changed: seen.append(changed))
    settings.update_settings({"language": "French"})
    assert seen == [{"language"}]


def test_replace_settings():
    settings = SettingsStore(MemoryKeyValueStore())
    settings.update_settings({"language": "French"})
    replaced = settings.replace_settings({"theme_color": "orange"})
    assert replaced["language"] == "English"
    assert replaced["theme_color"] == "orange"


@pytest.mark.parametrize(
    "partial",
    [
        {"vocabulary": "abc"},
        {"vocabulary": ["ok", 3]},
        {"notifications": "off"},
        {"advanced": ["dark"]},
    ],
)
def test_update_rejects_wrongly_typed_values(partial):
    settings = SettingsStore(MemoryKeyValueStore())
    with pytest.raises(ValidationError):
        settings.update_settings(partial)
    assert settings.get_vocabulary() == []
    assert settings.get_settings()["notifications"] == DEFAULT_SETTINGS["notifications"]


def test_replace_rejects_non_list_vocabulary():
    settings = SettingsStore(MemoryKeyValueStore())
    with pytest.raises(ValidationError):
        settings.replace_settings({"vocabulary": "abc"})
