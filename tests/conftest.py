"""Shared fixtures: in-memory store and cache, a scripted model invoker."""

import re
from datetime import datetime
from typing import Callable, List, Optional

import pytest

from bulkjobs.cache.backends import InMemoryCacheBackend
from bulkjobs.cache.response_cache import ResponseCache
from bulkjobs.jobs.in_process_store import InMemoryJobStore
from bulkjobs.jobs.models import InputRow, JobConfig, JobRecord, JobStatus, ResultRow
from bulkjobs.llm.credentials import encrypt_api_key
from bulkjobs.llm.invoker import Completion, ModelInvoker, ModelInvocationError
from bulkjobs.processing.executor import JobExecutor

SALT = "test-salt"
API_KEY = "sk-test-0123456789"

_ITEM = re.compile(r"^(\d+)\. (.*)$")


def answer(text: str) -> str:
    return f"processed: {text}"


def numbered_reply(user_content: str) -> str:
    """Answer every numbered item of a batch prompt, keeping the numbering."""
    body = user_content.split("Items to process:\n", 1)[1].split("\n\n", 1)[0]
    lines = []
    for line in body.splitlines():
        match = _ITEM.match(line)
        if match:
            lines.append(f"{match.group(1)}. {answer(match.group(2))}")
    return "\n".join(lines)


class StubInvoker(ModelInvoker):
    """Deterministic invoker. Records every user prompt it receives."""

    provider = "STUB"

    def __init__(
        self,
        model_id: str = "gpt-5-mini",
        fail_when: Optional[Callable[[str], bool]] = None,
        reply: Optional[Callable[[str], str]] = None,
    ):
        self.model_id = model_id
        self.calls: List[str] = []
        self.fail_when = fail_when
        self.reply = reply

    async def invoke(self, system_prompt: str, user_content: str) -> Completion:
        self.calls.append(user_content)
        if self.fail_when and self.fail_when(user_content):
            raise ModelInvocationError("provider unavailable")
        if self.reply is not None:
            text = self.reply(user_content)
        elif "Items to process:" in user_content:
            text = numbered_reply(user_content)
        else:
            text = answer(user_content)
        return Completion(text=text, input_tokens=10, output_tokens=5)

    @property
    def batch_calls(self) -> List[str]:
        return [c for c in self.calls if "Items to process:" in c]

    @property
    def row_calls(self) -> List[str]:
        return [c for c in self.calls if "Items to process:" not in c]


def make_job(
    rows: int,
    *,
    user_id: str = "user-1",
    status: JobStatus = JobStatus.PROCESSING,
    done: int = 0,
    model: str = "CHATGPT",
    encrypted_key: Optional[str] = None,
    prompt: Optional[str] = None,
    started_at: Optional[datetime] = None,
    retry_count: int = 0,
) -> JobRecord:
    inputs = [InputRow(index=i, input=f"item-{i:03d}") for i in range(rows)]
    results = [
        ResultRow(index=i, input=f"item-{i:03d}", output=answer(f"item-{i:03d}"), tokens=15)
        for i in range(done)
    ]
    return JobRecord(
        user_id=user_id,
        status=status,
        config=JobConfig(
            model=model,
            specific_model="gpt-5-mini",
            encrypted_api_key=encrypted_key if encrypted_key is not None else encrypt_api_key(API_KEY, SALT),
            prompt=prompt,
        ),
        input_data=inputs,
        results=results,
        processed_rows=done,
        total_rows=rows,
        started_at=started_at,
        retry_count=retry_count,
    )


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def cache_backend():
    return InMemoryCacheBackend()


@pytest.fixture
def cache(cache_backend):
    return ResponseCache(cache_backend)


@pytest.fixture
def invoker():
    return StubInvoker()


@pytest.fixture
def make_executor(store, cache):
    def build(invoker: ModelInvoker, batch_size: int = 12, **kwargs) -> JobExecutor:
        return JobExecutor(
            kwargs.pop("store", store),
            cache,
            None,
            encryption_salt=SALT,
            batch_size=batch_size,
            invoker_factory=lambda *args, **kw: invoker,
            **kwargs,
        )
    return build
