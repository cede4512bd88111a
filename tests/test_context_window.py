"""Tests for chat and legacy context assembly."""

from __future__ import annotations

from datetime import date

import pytest

from chatweave.ai.ai_types import ModelFamily
from chatweave.ai.orchestration.context_window import (
    ChatContextAssembler,
    CompletionPromptAssembler,
    detect_model_family,
    markers_for_family,
    response_token_limit,
)
from chatweave.ai.tokenizer import ApproxByteCounter


def _chars() -> ApproxByteCounter:
    return ApproxByteCounter(bytes_per_token=1)


@pytest.mark.parametrize(
    ("model", "family"),
    [
        ("gpt-3.5-turbo", ModelFamily.CHAT),
        ("gpt-4", ModelFamily.CHAT),
        ("text-chat-davinci-002-20230126", ModelFamily.LEGACY_CHAT),
        ("text-davinci-002-render-sha", ModelFamily.LEGACY_CHAT),
        ("code-davinci-002", ModelFamily.CODEX),
        ("text-davinci-003", ModelFamily.TEXT),
        (None, ModelFamily.TEXT),
    ],
)
def test_detect_model_family(model, family) -> None:
    assert detect_model_family(model) is family


def test_markers_for_family() -> None:
    assert markers_for_family(ModelFamily.LEGACY_CHAT).stop_sequences == ["<|im_end|>", "<|im_sep|>"]
    assert markers_for_family(ModelFamily.CODEX).stop_sequences == ["<|endoftext|>"]
    assert markers_for_family(ModelFamily.TEXT).end_token == "<|endoftext|>"


def test_response_token_limit_never_drops_below_one() -> None:
    assert response_token_limit(4096, 1000, 3500) == 596
    assert response_token_limit(4000, 1000, 100) == 1000
    assert response_token_limit(100, 10, 200) == 1


@pytest.mark.asyncio
async def test_chat_assembler_orders_ancestors_oldest_first(counting_store) -> None:
    assembler = ChatContextAssembler(store=counting_store, token_counter=_chars())

    window = await assembler.assemble("how are you", system_message="sys", parent_message_id="m2")

    assert window.as_list() == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hi there"},
        {"role": "user", "content": "how are you"},
    ]
    assert counting_store.lookups == ["m2", "m1"]


@pytest.mark.asyncio
async def test_chat_assembler_stops_at_budget(counting_store) -> None:
    assembler = ChatContextAssembler(
        store=counting_store,
        token_counter=_chars(),
        max_model_tokens=50,
        max_response_tokens=10,
    )

    window = await assembler.assemble("how are you", parent_message_id="m2")

    assert window.as_list() == [
        {"role": "assistant", "content": "hi there"},
        {"role": "user", "content": "how are you"},
    ]
    assert window.prompt_tokens == 38
    assert window.max_tokens == 10
    assert counting_store.lookups == ["m2", "m1"]


@pytest.mark.asyncio
async def test_chat_assembler_keeps_oversized_user_turn(counting_store) -> None:
    assembler = ChatContextAssembler(
        store=counting_store,
        token_counter=_chars(),
        max_model_tokens=50,
        max_response_tokens=10,
    )

    window = await assembler.assemble("x" * 100, parent_message_id="m2")

    assert window.as_list() == [{"role": "user", "content": "x" * 100}]
    assert window.max_tokens == 1
    assert counting_store.lookups == []


@pytest.mark.asyncio
async def test_chat_assembler_forwards_turn_name(counting_store) -> None:
    assembler = ChatContextAssembler(store=counting_store, token_counter=_chars())

    window = await assembler.assemble("hey", name="alice")

    assert window.as_list() == [{"role": "user", "content": "hey", "name": "alice"}]


@pytest.mark.asyncio
async def test_chat_assembler_keeps_empty_user_turn(counting_store) -> None:
    assembler = ChatContextAssembler(store=counting_store, token_counter=_chars())

    window = await assembler.assemble("", system_message="sys")

    assert window.as_list() == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": ""},
    ]


@pytest.mark.asyncio
async def test_chat_assembler_treats_missing_parent_as_chain_end(counting_store) -> None:
    assembler = ChatContextAssembler(store=counting_store, token_counter=_chars())

    window = await assembler.assemble("hey", parent_message_id="ghost")

    assert len(window.messages) == 1
    assert counting_store.lookups == ["ghost"]


@pytest.mark.asyncio
async def test_chat_assembler_without_context_skips_lookups(counting_store) -> None:
    assembler = ChatContextAssembler(store=counting_store, token_counter=_chars(), with_context=False)

    window = await assembler.assemble("hey", parent_message_id="m2")

    assert len(window.messages) == 1
    assert counting_store.lookups == []


def test_chat_transcript_labels() -> None:
    assembler = ChatContextAssembler(store=None, token_counter=_chars())  # type: ignore[arg-type]

    transcript = assembler.render_transcript(
        [
            {"role": "system", "content": "be nice"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]
    )

    assert transcript == "Instructions:\nbe nice\n\nUser:\nhi\n\nAssistant:\nhello"


@pytest.mark.asyncio
async def test_completion_prompt_layout(counting_store) -> None:
    assembler = CompletionPromptAssembler(
        store=counting_store,
        token_counter=_chars(),
        today=lambda: date(2023, 3, 1),
    )

    window = await assembler.assemble("how are you", parent_message_id="m2")

    assert window.prompt == (
        "Instructions:\nYou are ChatGPT, a large language model trained by OpenAI.\n"
        "Current date: 2023-03-01<|endoftext|>"
        "User:\n\nhello<|endoftext|>\n\n"
        "ChatGPT:\n\nhi there<|endoftext|>\n\n"
        "User:\n\nhow are you<|endoftext|>"
        "\nChatGPT:\n"
    )
    assert window.turns_included == 3
    assert window.prompt_tokens == len(window.prompt)
    assert window.max_tokens == 1000


@pytest.mark.asyncio
async def test_completion_prompt_uses_chat_markers_and_system_message(counting_store) -> None:
    assembler = CompletionPromptAssembler(
        store=counting_store,
        token_counter=_chars(),
        family=ModelFamily.LEGACY_CHAT,
        with_context=False,
    )

    window = await assembler.assemble("hey", system_message="Be terse.")

    assert window.prompt == "Instructions:\nBe terse.<|im_sep|>User:\n\nhey<|im_end|>\nChatGPT:\n"


@pytest.mark.asyncio
async def test_completion_prompt_stops_at_budget(counting_store) -> None:
    assembler = CompletionPromptAssembler(
        store=counting_store,
        token_counter=_chars(),
        max_model_tokens=80,
        max_response_tokens=10,
    )

    window = await assembler.assemble(
        "how are you", parent_message_id="m2", prompt_prefix="P|", prompt_suffix="|S"
    )

    assert window.prompt == "P|ChatGPT:\n\nhi there<|endoftext|>\n\nUser:\n\nhow are you<|endoftext|>|S"
    assert window.prompt_tokens == 68
    assert window.turns_included == 2
    assert window.max_tokens == 10
    assert counting_store.lookups == ["m2", "m1"]


@pytest.mark.asyncio
async def test_completion_prompt_oversized_turn_gets_minimum_response(counting_store) -> None:
    assembler = CompletionPromptAssembler(
        store=counting_store,
        token_counter=_chars(),
        max_model_tokens=50,
        max_response_tokens=10,
    )

    window = await assembler.assemble("x" * 100, parent_message_id="m2", prompt_prefix="", prompt_suffix="")

    assert window.turns_included == 1
    assert window.max_tokens == 1
    assert counting_store.lookups == []
