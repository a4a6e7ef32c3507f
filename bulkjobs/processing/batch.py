"""Batched model calls over pending job rows.

A chunk of rows becomes one numbered prompt; the numbered reply is split
back into per-row outputs. When the chunk call fails (or its reply cannot be
mapped safely), every row in the chunk is retried on its own.
"""

import logging
import math
import re
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from bulkjobs.cache.response_cache import ResponseCache
from bulkjobs.jobs.models import InputRow, ResultRow
from bulkjobs.llm.invoker import ModelInvoker

logger = logging.getLogger(__name__)

# "1. text", "2)text", "3: text"; a digit right after the punctuation
# means a number such as "3.5 kg", not a marker.
_MARKER = re.compile(r"^\s*(\d+)[.):](?!\d)\s*(.*)$")
_PLACEHOLDER = re.compile(r"\{\{?input\}?\}")

_SIMPLE_ANSWER = re.compile(
    r"^(Yes|No|Done|Completed|OK|True|False|Sí|Non|Oui|Ja|Nein|Да|Нет)\.?$",
    re.IGNORECASE,
)
_TRAILING_CONFIRMATIONS = [
    re.compile(r"^(.+?)\s*\|\|\|\s*(?:Yes|No|Done|Completed|OK|True|False)?\s*$", re.IGNORECASE | re.DOTALL),
    re.compile(r"^(.+?)\s*[|;]\s*(?:Yes|No|Done|Completed|OK|True|False)\s*$", re.IGNORECASE | re.DOTALL),
]
_TRAILING_PIPES = re.compile(r"\s*\|+\s*$")


class BatchParseError(ValueError):
    """A reply without markers could not be mapped to rows by position."""


class BatchOutcome(BaseModel):
    results: List[ResultRow] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def extend(self, other: "BatchOutcome") -> None:
        self.results.extend(other.results)
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


def partition(rows: Sequence[InputRow], size: int) -> List[List[InputRow]]:
    """Consecutive chunks of at most `size` rows, order preserved."""
    if size < 1:
        raise ValueError("batch size must be >= 1")
    return [list(rows[i:i + size]) for i in range(0, len(rows), size)]


def clean_output(output: str) -> str:
    """Strip confirmation suffixes some models append ("text ||| Yes").

    A bare one-word answer is left alone since it may be the real result.
    """
    if not output:
        return output
    text = output.strip()
    if _SIMPLE_ANSWER.match(text):
        return text
    for pattern in _TRAILING_CONFIRMATIONS:
        text = pattern.sub(r"\1", text)
    return _TRAILING_PIPES.sub("", text).strip()


def render_row_prompt(row: InputRow, template: Optional[str]) -> str:
    if not template:
        return row.input
    if _PLACEHOLDER.search(template):
        return _PLACEHOLDER.sub(lambda _: row.input, template)
    return f"{template.strip()}\n\n{row.input}"


def render_batch_prompt(chunk: Sequence[InputRow], template: Optional[str]) -> str:
    items = "\n".join(f"{i}. {row.input}" for i, row in enumerate(chunk, start=1))
    if template:
        instruction = _PLACEHOLDER.sub("each item below", template).strip()
    else:
        instruction = "Process each item below."
    return (
        f"{instruction}\n\n"
        f"Items to process:\n{items}\n\n"
        "Reply with ONLY the result for each item, numbered to match "
        "(1. result, 2. result, ...). No confirmations or extra text.\n"
    )


def parse_batch_response(
    response: str, chunk_size: int, strict_positional: bool = True
) -> List[str]:
    """Split a numbered reply into `chunk_size` outputs (position i -> item i+1).

    Lines without a marker continue the current item. If no markers are
    found, lines are mapped by position: in strict mode only when the line
    count equals `chunk_size` (otherwise BatchParseError), else when there
    are at least `chunk_size` lines. Unmapped positions are "".
    """
    lines = [line.strip() for line in response.splitlines() if line.strip()]
    items: Dict[int, List[str]] = {}
    current: Optional[int] = None

    for line in lines:
        match = _MARKER.match(line)
        if match:
            current = int(match.group(1))
            items[current] = [match.group(2) or ""]
        elif current is not None:
            items[current].append(line)

    outputs = [
        clean_output(" ".join(items.get(n, [])).strip())
        for n in range(1, chunk_size + 1)
    ]
    if any(outputs):
        return outputs

    if strict_positional:
        if len(lines) != chunk_size:
            raise BatchParseError(
                f"no numbered items and {len(lines)} lines for {chunk_size} rows"
            )
    elif len(lines) < chunk_size:
        return outputs

    logger.info("Batch reply has no numbered items, mapping %d lines by position", chunk_size)
    return [clean_output(line) for line in lines[:chunk_size]]


class BatchProcessor:
    """Runs one job's pending rows through the model, chunk by chunk."""

    def __init__(
        self,
        invoker: ModelInvoker,
        cache: ResponseCache,
        system_prompt: str,
        prompt_template: Optional[str] = None,
        batch_size: int = 12,
        strict_positional: bool = True,
        job_id: str = "",
    ):
        self._invoker = invoker
        self._cache = cache
        self._system_prompt = system_prompt
        self._template = prompt_template
        self.batch_size = batch_size
        self._strict = strict_positional
        self._job_id = job_id

    def partition(self, rows: Sequence[InputRow]) -> List[List[InputRow]]:
        return partition(rows, self.batch_size)

    async def process_chunk(self, chunk: Sequence[InputRow]) -> BatchOutcome:
        """One chunk -> one result per row, in chunk order."""
        if not chunk:
            return BatchOutcome()
        if len(chunk) == 1:
            return await self._process_rows(chunk)

        prompt = render_batch_prompt(chunk, self._template)
        cache_key = self._cache.key(self._invoker.model_id, self._system_prompt, prompt)
        try:
            hit = await self._cache.get(cache_key)
            if hit is not None:
                outputs = parse_batch_response(hit.response, len(chunk), self._strict)
                return self._chunk_outcome(chunk, outputs, hit.tokens_used, cached=True)

            completion = await self._invoker.invoke(self._system_prompt, prompt)
            outputs = parse_batch_response(completion.text, len(chunk), self._strict)
        except Exception as e:
            logger.warning(
                "Job %s: batch of %d rows failed (%s), processing rows individually",
                self._job_id, len(chunk), e,
            )
            return await self._process_rows(chunk)

        await self._cache.put(
            cache_key, self._invoker.model_id, completion.text, completion.total_tokens
        )
        outcome = self._chunk_outcome(chunk, outputs, completion.total_tokens, cached=False)
        outcome.input_tokens = completion.input_tokens
        outcome.output_tokens = completion.output_tokens
        return outcome

    def _chunk_outcome(
        self, chunk: Sequence[InputRow], outputs: List[str], tokens: int, cached: bool
    ) -> BatchOutcome:
        per_row = math.ceil(tokens / len(chunk)) if tokens else 0
        empty = sum(1 for o in outputs if not o)
        if empty:
            logger.warning("Job %s: %d/%d rows got empty output from batch reply",
                           self._job_id, empty, len(chunk))
        return BatchOutcome(results=[
            ResultRow(index=row.index, input=row.input, output=output,
                      tokens=per_row, cached=cached)
            for row, output in zip(chunk, outputs)
        ])

    async def _process_rows(self, chunk: Sequence[InputRow]) -> BatchOutcome:
        outcome = BatchOutcome()
        for row in chunk:
            outcome.extend(await self._process_row(row))
        return outcome

    async def _process_row(self, row: InputRow) -> BatchOutcome:
        prompt = render_row_prompt(row, self._template)
        cache_key = self._cache.key(self._invoker.model_id, self._system_prompt, prompt)

        hit = await self._cache.get(cache_key)
        if hit is not None:
            return BatchOutcome(results=[ResultRow(
                index=row.index, input=row.input, output=clean_output(hit.response),
                tokens=hit.tokens_used, cached=True,
            )])

        try:
            completion = await self._invoker.invoke(self._system_prompt, prompt)
        except Exception as e:
            logger.error("Job %s: row %d failed: %s", self._job_id, row.index, e)
            return BatchOutcome(results=[ResultRow(
                index=row.index, input=row.input, output="", tokens=0,
                cached=False, error=str(e) or type(e).__name__,
            )])

        await self._cache.put(
            cache_key, self._invoker.model_id, completion.text, completion.total_tokens
        )
        return BatchOutcome(
            results=[ResultRow(
                index=row.index, input=row.input, output=clean_output(completion.text),
                tokens=completion.total_tokens, cached=False,
            )],
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )
