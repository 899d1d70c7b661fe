from __future__ import annotations

import pytest

from counsel_orchestrator.storage.memory import InMemoryConversationStore
from counsel_orchestrator.storage.models import (
    Conversation,
    ConversationMessage,
    Task,
    TaskRequest,
    ToolExecutionRecord,
)


def _task(query: str = "find halos") -> Task:
    return Task.from_request(TaskRequest(query=query, conversation_id="ignored-until-execution"))


def test_from_request_leaves_conversation_unbound() -> None:
    task = _task()
    assert task.status == "queued"
    assert task.conversation_id is None


def test_task_round_trip_and_update() -> None:
    store = InMemoryConversationStore()
    task = store.create_task(_task())

    updated = store.update_task(task.task_id, status="running", rounds_used=2)

    assert updated.status == "running"
    assert updated.rounds_used == 2
    assert store.get_task(task.task_id) == updated
    assert store.get_task("missing") is None


def test_update_task_rejects_unknown_fields_and_ids() -> None:
    store = InMemoryConversationStore()
    task = store.create_task(_task())

    with pytest.raises(ValueError, match="Unknown Task fields"):
        store.update_task(task.task_id, colour="blue")
    with pytest.raises(KeyError):
        store.update_task("missing", status="failed")


def test_duplicate_task_ids_are_rejected() -> None:
    store = InMemoryConversationStore()
    task = store.create_task(_task())
    with pytest.raises(ValueError, match="already exists"):
        store.create_task(task)


def test_returned_tasks_do_not_alias_stored_state() -> None:
    store = InMemoryConversationStore()
    task = store.create_task(_task())

    fetched = store.get_task(task.task_id)
    assert fetched is not None
    fetched.status = "failed"

    again = store.get_task(task.task_id)
    assert again is not None and again.status == "queued"


def test_list_tasks_newest_first_with_filter_and_limit() -> None:
    store = InMemoryConversationStore()
    first = store.create_task(_task("first"))
    second = store.create_task(_task("second"))
    store.update_task(first.task_id, status="completed")

    assert [task.query for task in store.list_tasks()] == ["second", "first"]
    assert [task.task_id for task in store.list_tasks(status="completed")] == [first.task_id]
    assert [task.task_id for task in store.list_tasks(limit=1)] == [second.task_id]


def test_add_message_updates_conversation_counters() -> None:
    store = InMemoryConversationStore()
    conversation = store.create_conversation(
        Conversation(subject="halos", participant_email="api@impress.local")
    )

    store.add_message(
        ConversationMessage(
            conversation_id=conversation.conversation_id,
            role="user",
            content="question",
            token_count=7,
        )
    )
    store.add_message(
        ConversationMessage(
            conversation_id=conversation.conversation_id,
            role="assistant",
            content="answer",
        )
    )

    stored = store.get_conversation(conversation.conversation_id)
    assert stored is not None
    assert stored.message_count == 2
    assert stored.total_tokens_used == 7
    assert [message.content for message in store.list_messages(conversation.conversation_id)] == [
        "question",
        "answer",
    ]


def test_add_message_requires_existing_conversation() -> None:
    store = InMemoryConversationStore()
    with pytest.raises(KeyError):
        store.add_message(ConversationMessage(conversation_id="missing", role="user", content="hi"))


def test_update_conversation_touches_updated_at() -> None:
    store = InMemoryConversationStore()
    conversation = store.create_conversation(
        Conversation(subject="halos", participant_email="api@impress.local")
    )

    updated = store.update_conversation(conversation.conversation_id, total_tokens_used=99)

    assert updated.total_tokens_used == 99
    assert updated.updated_at >= conversation.updated_at
    with pytest.raises(KeyError):
        store.update_conversation("missing", summary="x")


def test_tool_executions_filter_by_task() -> None:
    store = InMemoryConversationStore()
    for task_id, tool in (("t1", "imbib_search_library"), ("t2", "imbib_get_paper")):
        store.add_tool_execution(
            ToolExecutionRecord(
                conversation_id="c1",
                task_id=task_id,
                tool_name=tool,
                tool_input={"query": "halo"},
                tool_output="[]",
            )
        )

    assert len(store.list_tool_executions("c1")) == 2
    only_t2 = store.list_tool_executions("c1", task_id="t2")
    assert [record.tool_name for record in only_t2] == ["imbib_get_paper"]
    assert store.list_tool_executions("other") == []
