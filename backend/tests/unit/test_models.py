# backend/tests/unit/test_models.py
from datetime import timedelta

import pytest
from pydantic import ValidationError

from flowbot.models.config import BotDefinition
from flowbot.models.events import CallbackEvent, CommandEvent, MessageEvent, event_from_update, parse_command
from flowbot.models.flow import FlowCatalog, FlowDefinition, InputKind


def test_flow_requires_existing_initial_step():
    with pytest.raises(ValidationError):
        FlowDefinition.model_validate({"id": "f", "initial_step": "missing", "steps": {"a": {}}})
    with pytest.raises(ValidationError):
        FlowDefinition.model_validate({"id": "f", "initial_step": "a", "steps": {}})


def test_flow_fills_step_ids_and_ttl():
    flow = FlowDefinition.model_validate({"id": "f", "initial_step": "a", "ttl": 120, "steps": {"a": {}}})
    assert flow.get_step("a").id == "a"
    assert flow.get_step("a").input_type == InputKind.NONE
    assert flow.get_ttl(timedelta(minutes=30)) == timedelta(seconds=120)


def test_input_kind_acceptance():
    assert InputKind.ANY.accepts(InputKind.TEXT)
    assert InputKind.ANY.accepts(InputKind.CALLBACK)
    assert not InputKind.ANY.accepts(InputKind.PHOTO)
    assert not InputKind.NONE.accepts(InputKind.TEXT)
    assert InputKind.DOCUMENT.accepts(InputKind.DOCUMENT)


def test_bot_definition_and_catalog_from_file(tmp_path):
    path = tmp_path / "bot.json"
    path.write_text('{"flows": {"f": {"initial_step": "a", "steps": {"a": {"prompt_text": "hi"}}}}}')

    definition = BotDefinition.from_file(str(path))
    assert definition.flows["f"].id == "f"

    catalog = FlowCatalog.from_file(str(path))
    assert catalog.get_step("f", "a").prompt_text == "hi"
    assert catalog.get_step("f", "b") is None
    assert catalog.get_flow("x") is None


def test_command_config_requires_handler_or_action():
    with pytest.raises(ValidationError):
        BotDefinition.model_validate({"commands": [{"command": "start"}]})
    with pytest.raises(ValidationError):
        BotDefinition.model_validate({"commands": [{"command": "go", "action": "start_flow"}]})


def test_parse_command_strips_slash_and_bot_name():
    assert parse_command("/start@my_bot hello there") == ("start", "hello there")
    assert parse_command("/Help") == ("Help", "")


def test_event_from_text_and_command_updates():
    base = {"from": {"id": 7, "username": "alice"}, "chat": {"id": 70}, "message_id": 5}

    event = event_from_update({"message": {**base, "text": "hello"}})
    assert isinstance(event, MessageEvent)
    assert (event.kind, event.value, event.username) == (InputKind.TEXT, "hello", "alice")

    command = event_from_update({"message": {**base, "text": "/start@bot x", "message_thread_id": 3}})
    assert isinstance(command, CommandEvent)
    assert (command.command, command.args, command.topic_id) == ("start", "x", 3)


def test_event_from_media_updates():
    base = {"from": {"id": 7}, "chat": {"id": 70}, "message_id": 5}

    photo = event_from_update({"message": {**base, "photo": [{"file_id": "small"}, {"file_id": "large"}]}})
    assert (photo.kind, photo.value) == (InputKind.PHOTO, "large")

    doc = event_from_update({"message": {**base, "document": {"file_id": "d1", "file_name": "a.pdf"}}})
    assert (doc.kind, doc.value, doc.file_name) == (InputKind.DOCUMENT, "d1", "a.pdf")


def test_event_from_callback_update():
    update = {"callback_query": {
        "id": "cb1", "from": {"id": 7}, "data": "flow:register",
        "message": {"message_id": 42, "chat": {"id": 70}},
    }}
    event = event_from_update(update)
    assert isinstance(event, CallbackEvent)
    assert (event.callback_id, event.data, event.chat_id, event.message_id) == ("cb1", "flow:register", 70, 42)


def test_unsupported_updates_are_ignored():
    assert event_from_update({"edited_message": {}}) is None
    assert event_from_update({"message": {"chat": {"id": 1}, "text": "no sender"}}) is None
    assert event_from_update({"message": {"from": {"id": 1}, "chat": {"id": 1}, "sticker": {}}}) is None
