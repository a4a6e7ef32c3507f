"""
Tests for batch partitioning, prompt rendering, reply parsing and the
chunk -> row fallback.
"""

import pytest

from bulkjobs.cache.backends import InMemoryCacheBackend
from bulkjobs.cache.response_cache import ResponseCache
from bulkjobs.jobs.models import InputRow
from bulkjobs.processing.batch import (
    BatchOutcome,
    BatchParseError,
    BatchProcessor,
    clean_output,
    parse_batch_response,
    partition,
    render_batch_prompt,
    render_row_prompt,
)

from conftest import StubInvoker, answer, numbered_reply


def rows(n, start=0):
    return [InputRow(index=i, input=f"item-{i:03d}") for i in range(start, start + n)]


def processor(invoker, cache=None, batch_size=12, **kwargs):
    return BatchProcessor(
        invoker,
        cache or ResponseCache(InMemoryCacheBackend()),
        system_prompt="You are a helpful assistant.",
        batch_size=batch_size,
        **kwargs,
    )


async def run_chunks(batch_processor, input_rows):
    """Drive every chunk the way the executor does."""
    outcome = BatchOutcome()
    for chunk in batch_processor.partition(input_rows):
        outcome.extend(await batch_processor.process_chunk(chunk))
    return outcome


class TestPartition:
    def test_sizes_and_order(self):
        chunks = partition(rows(25), 12)
        assert [len(c) for c in chunks] == [12, 12, 1]
        assert [r.index for c in chunks for r in c] == list(range(25))

    def test_empty(self):
        assert partition([], 12) == []

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            partition(rows(3), 0)


class TestRendering:
    def test_row_prompt_substitutes_placeholder(self):
        row = InputRow(index=0, input="hello")
        assert render_row_prompt(row, "Translate to French: {input}") == "Translate to French: hello"
        assert render_row_prompt(row, "Translate {{input}} now") == "Translate hello now"

    def test_row_prompt_without_placeholder_appends_input(self):
        row = InputRow(index=0, input="hello")
        assert render_row_prompt(row, "Summarize this. ") == "Summarize this.\n\nhello"
        assert render_row_prompt(row, None) == "hello"

    def test_batch_prompt_numbers_items(self):
        prompt = render_batch_prompt(rows(3), "Translate {input} to French")
        assert prompt.startswith("Translate each item below to French\n\n")
        assert "Items to process:\n1. item-000\n2. item-001\n3. item-002\n\n" in prompt
        assert "numbered to match" in prompt

    def test_batch_prompt_default_instruction(self):
        assert render_batch_prompt(rows(2), None).startswith("Process each item below.")


class TestParseBatchResponse:
    def test_mixed_markers_and_continuation_lines(self):
        reply = "1) alpha\n2: beta\nstill beta\n3. gamma"
        assert parse_batch_response(reply, 3) == ["alpha", "beta still beta", "gamma"]

    def test_missing_items_are_empty(self):
        assert parse_batch_response("1. a\n3. c", 3) == ["a", "", "c"]

    def test_extra_items_are_ignored(self):
        assert parse_batch_response("1. a\n2. b\n3. c", 2) == ["a", "b"]

    def test_decimal_is_not_a_marker(self):
        assert parse_batch_response("3.5 kg", 1) == ["3.5 kg"]
        assert parse_batch_response("1. 3.5 kg\n2. 10:30", 2) == ["3.5 kg", "10:30"]

    def test_compact_markers_without_space(self):
        assert parse_batch_response("1.Paris\n2.Rome\n3.Berlin", 3) == ["Paris", "Rome", "Berlin"]
        assert parse_batch_response("1)Paris\n2:Rome", 2) == ["Paris", "Rome"]

    def test_confirmation_suffixes_are_stripped(self):
        assert parse_batch_response("1. Bonjour ||| Yes\n2. Hola | Done", 2) == ["Bonjour", "Hola"]

    def test_strict_positional_needs_exact_line_count(self):
        assert parse_batch_response("a\nb\nc", 3) == ["a", "b", "c"]
        with pytest.raises(BatchParseError):
            parse_batch_response("a\nb\nc\nd", 3)
        with pytest.raises(BatchParseError):
            parse_batch_response("a\nb", 3)

    def test_lenient_positional_mapping(self):
        assert parse_batch_response("a\nb\nc\nd", 3, strict_positional=False) == ["a", "b", "c"]
        assert parse_batch_response("a\nb", 3, strict_positional=False) == ["", "", ""]


class TestCleanOutput:
    @pytest.mark.parametrize("raw,expected", [
        ("Bonjour ||| Yes", "Bonjour"),
        ("Bonjour |||", "Bonjour"),
        ("Hola ; Done", "Hola"),
        ("Yes", "Yes"),
        ("No.", "No."),
        ("  plain text  ", "plain text"),
        ("", ""),
    ])
    def test_cases(self, raw, expected):
        assert clean_output(raw) == expected


class TestBatchProcessor:
    async def test_one_call_per_chunk(self):
        invoker = StubInvoker()
        outcome = await run_chunks(processor(invoker), rows(24))

        assert len(invoker.calls) == 2
        assert [r.index for r in outcome.results] == list(range(24))
        assert all(r.output == answer(r.input) for r in outcome.results)
        assert outcome.input_tokens == 20
        assert outcome.output_tokens == 10

    async def test_batched_and_unbatched_results_match(self):
        batched = await run_chunks(processor(StubInvoker(), batch_size=12), rows(25))
        single = await run_chunks(processor(StubInvoker(), batch_size=1), rows(25))

        assert [(r.index, r.output) for r in batched.results] == \
               [(r.index, r.output) for r in single.results]

    async def test_compact_numbered_reply_matches_unbatched_output(self):
        def compact(prompt):
            return numbered_reply(prompt).replace(". processed", ".processed")

        batched = await run_chunks(processor(StubInvoker(reply=compact)), rows(3))
        single = await run_chunks(processor(StubInvoker(), batch_size=1), rows(3))

        assert [r.output for r in batched.results] == [r.output for r in single.results]

    async def test_single_row_chunk_uses_row_prompt(self):
        invoker = StubInvoker()
        outcome = await run_chunks(processor(invoker), rows(1))
        assert invoker.calls == ["item-000"]
        assert outcome.results[0].output == answer("item-000")
        assert outcome.results[0].tokens == 15

    async def test_tokens_are_split_across_rows(self):
        outcome = await run_chunks(processor(StubInvoker()), rows(4))
        # 15 tokens over 4 rows, rounded up
        assert [r.tokens for r in outcome.results] == [4, 4, 4, 4]

    async def test_failed_chunk_falls_back_to_rows(self):
        invoker = StubInvoker(fail_when=lambda prompt: "Items to process:" in prompt)
        outcome = await run_chunks(processor(invoker), rows(5))

        assert len(invoker.batch_calls) == 1
        assert invoker.row_calls == [f"item-{i:03d}" for i in range(5)]
        assert all(r.error is None for r in outcome.results)
        assert [r.output for r in outcome.results] == [answer(f"item-{i:03d}") for i in range(5)]

    async def test_unparseable_reply_falls_back_to_rows(self):
        def reply(prompt):
            if "Items to process:" in prompt:
                return "I cannot number these."
            return answer(prompt)

        invoker = StubInvoker(reply=reply)
        outcome = await run_chunks(processor(invoker), rows(3))

        assert len(invoker.row_calls) == 3
        assert [r.output for r in outcome.results] == [answer(f"item-{i:03d}") for i in range(3)]

    async def test_row_failure_is_recorded_on_the_row(self):
        invoker = StubInvoker(fail_when=lambda prompt: prompt == "item-002")
        outcome = await run_chunks(processor(invoker, batch_size=1), rows(4))

        failed = [r for r in outcome.results if r.error]
        assert [r.index for r in failed] == [2]
        assert failed[0].output == ""
        assert failed[0].tokens == 0
        assert len(outcome.results) == 4

    async def test_repeat_run_is_served_from_cache(self):
        cache = ResponseCache(InMemoryCacheBackend())
        invoker = StubInvoker()
        first = await run_chunks(processor(invoker, cache=cache), rows(13))
        calls = len(invoker.calls)

        second = await run_chunks(processor(invoker, cache=cache), rows(13))
        await cache.drain()

        assert len(invoker.calls) == calls
        assert all(r.cached for r in second.results)
        assert [r.output for r in second.results] == [r.output for r in first.results]
        assert second.input_tokens == second.output_tokens == 0

    async def test_template_reaches_the_model(self):
        invoker = StubInvoker()
        await run_chunks(processor(invoker, prompt_template="Uppercase {input}"), rows(2))
        assert invoker.calls[0].startswith("Uppercase each item below")
