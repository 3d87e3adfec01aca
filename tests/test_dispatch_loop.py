from dataclasses import dataclass

import anyio
import pytest

from tgwa.relay import (
    ConnectionState,
    DeliveryQueue,
    DestinationHandle,
    DispatchLoop,
    DispatchOptions,
    JobKind,
    MediaContent,
    MediaNotFound,
    MediaRef,
    MediaResolver,
    ReadinessGate,
    RelayJob,
    SendOptions,
    text_job,
)

_FAST = DispatchOptions(
    concurrency=5,
    batch_delay_seconds=0,
    stagger_seconds=0,
    poll_interval_seconds=0.01,
    send_timeout_seconds=1,
    retry_backoff_seconds=0,
    retry_backoff_max_seconds=0,
)


@dataclass
class _FakeConnection:
    state: ConnectionState = ConnectionState.DISCONNECTED
    destination: DestinationHandle | None = None

    def open(self) -> None:
        self.state = ConnectionState.READY
        self.destination = DestinationHandle(chat_id="123@g.us", name="Relay Group")

    def close(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.destination = None


class _RecordingSender:
    def __init__(
        self,
        *,
        fail: set[str] | None = None,
        fail_once: set[str] | None = None,
        hang: set[str] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.fail = fail or set()
        self.fail_once = fail_once or set()
        self.hang = hang or set()
        self.delay = delay
        self.attempts: list[str] = []
        self.sent: list[str] = []
        self.calls: list[tuple[str, str | MediaContent, SendOptions]] = []
        self.on_send = None

    async def send_message(
        self, chat_id: str, content: str | MediaContent, options: SendOptions
    ) -> None:
        label = content if isinstance(content, str) else (content.filename or "")
        self.attempts.append(label)
        self.calls.append((chat_id, content, options))
        if self.on_send is not None:
            self.on_send(label)
        if self.delay:
            await anyio.sleep(self.delay)
        if label in self.hang:
            await anyio.sleep_forever()
        if label in self.fail:
            raise RuntimeError(f"send failed: {label}")
        if label in self.fail_once:
            self.fail_once.discard(label)
            raise RuntimeError(f"send failed once: {label}")
        self.sent.append(label)


def _loop(
    sender: _RecordingSender,
    *,
    options: DispatchOptions = _FAST,
    resolver: MediaResolver | None = None,
) -> tuple[DispatchLoop, DeliveryQueue, _FakeConnection]:
    connection = _FakeConnection()
    queue = DeliveryQueue()
    loop = DispatchLoop(
        queue=queue,
        gate=ReadinessGate(connection),
        sender=sender,
        resolver=resolver,
        options=options,
    )
    return loop, queue, connection


@pytest.mark.anyio
async def test_jobs_queued_while_closed_are_sent_in_fifo_order() -> None:
    sender = _RecordingSender()
    loop, queue, connection = _loop(sender)
    for text in ("J1", "J2", "J3"):
        queue.enqueue(text_job(text))

    assert await loop.drain() == 0
    assert sender.attempts == []

    connection.open()
    await loop.drain()

    assert sender.sent == ["J1", "J2", "J3"]
    assert queue.size() == 0
    assert loop.sent_total == 3


@pytest.mark.anyio
async def test_requeued_job_goes_before_new_arrivals() -> None:
    sender = _RecordingSender(fail_once={"J1"})
    loop, queue, connection = _loop(sender)
    connection.open()
    j1 = text_job("J1")
    for job in (j1, text_job("J2"), text_job("J3")):
        queue.enqueue(job)

    outcome = await loop.dispatch_batch()
    assert outcome is not None
    assert [job.id for job in outcome.failed] == [j1.id]
    queue.enqueue(text_job("J4"))

    pending = queue.snapshot()
    assert pending[0].id == j1.id
    assert pending[0].kind == JobKind.RETRY
    assert pending[0].attempts == 1

    await loop.dispatch_batch()

    assert sender.attempts == ["J1", "J2", "J3", "J1", "J4"]
    assert sender.sent == ["J2", "J3", "J1", "J4"]


@pytest.mark.anyio
async def test_no_job_leaves_queue_while_gate_is_closed() -> None:
    sender = _RecordingSender()
    loop, queue, connection = _loop(sender)
    connection.state = ConnectionState.READY  # ready but no destination
    for i in range(20):
        queue.enqueue(text_job(f"J{i}"))

    async with anyio.create_task_group() as tg:
        tg.start_soon(loop.run)
        for _ in range(5):
            loop.kick()
            await anyio.sleep(0.02)
        loop.stop()

    assert await loop.drain() == 0
    assert queue.size() == 20
    assert sender.attempts == []


@pytest.mark.anyio
async def test_concurrent_drains_collapse_into_one_cycle() -> None:
    sender = _RecordingSender(delay=0.02)
    loop, queue, connection = _loop(sender)
    connection.open()
    for i in range(12):
        queue.enqueue(text_job(f"J{i}"))

    results: list[int] = []

    async def _drain() -> None:
        results.append(await loop.drain())

    async with anyio.create_task_group() as tg:
        for _ in range(4):
            tg.start_soon(_drain)

    assert sorted(results) == [0, 0, 0, 3]
    assert sorted(sender.sent) == sorted(f"J{i}" for i in range(12))
    assert len(sender.attempts) == 12


@pytest.mark.anyio
async def test_one_failing_job_does_not_affect_its_batch() -> None:
    sender = _RecordingSender(fail={"J3"})
    loop, queue, connection = _loop(sender)
    connection.open()
    jobs = [text_job(f"J{i}") for i in range(1, 6)]
    for job in jobs:
        queue.enqueue(job)

    outcome = await loop.dispatch_batch()

    assert outcome is not None
    assert sender.sent == ["J1", "J2", "J4", "J5"]
    assert [job.id for job in outcome.requeued] == [jobs[2].id]
    assert [job.id for job in queue.snapshot()] == [jobs[2].id]
    assert queue.snapshot()[0].attempts == 1


@pytest.mark.anyio
async def test_hung_send_times_out_without_blocking_siblings() -> None:
    options = DispatchOptions(
        concurrency=3,
        batch_delay_seconds=0,
        stagger_seconds=0,
        send_timeout_seconds=0.05,
    )
    sender = _RecordingSender(hang={"J2"})
    loop, queue, connection = _loop(sender, options=options)
    connection.open()
    for text in ("J1", "J2", "J3"):
        queue.enqueue(text_job(text))

    with anyio.fail_after(2):
        outcome = await loop.dispatch_batch()

    assert outcome is not None
    assert sender.sent == ["J1", "J3"]
    assert [job.payload.text for job in outcome.requeued] == ["J2"]  # type: ignore[union-attr]


@pytest.mark.anyio
async def test_gate_closing_mid_batch_returns_unsent_jobs_unchanged() -> None:
    options = DispatchOptions(
        concurrency=3,
        batch_delay_seconds=0,
        stagger_seconds=0.02,
    )
    sender = _RecordingSender()
    loop, queue, connection = _loop(sender, options=options)
    connection.open()
    sender.on_send = lambda label: connection.close()
    jobs = [text_job(text) for text in ("J1", "J2", "J3")]
    for job in jobs:
        queue.enqueue(job)

    outcome = await loop.dispatch_batch()

    assert outcome is not None
    assert sender.sent == ["J1"]
    assert outcome.deferred == jobs[1:]
    assert queue.snapshot() == jobs[1:]
    assert all(job.attempts == 0 for job in queue.snapshot())


@pytest.mark.anyio
async def test_job_is_dropped_after_max_attempts() -> None:
    options = DispatchOptions(
        batch_delay_seconds=0,
        stagger_seconds=0,
        retry_backoff_seconds=0,
        retry_backoff_max_seconds=0,
        max_attempts=2,
    )
    sender = _RecordingSender(fail={"J1"})
    loop, queue, connection = _loop(sender, options=options)
    connection.open()
    queue.enqueue(text_job("J1"))

    await loop.drain()

    assert sender.attempts == ["J1", "J1"]
    assert queue.size() == 0
    assert loop.dropped_total == 1


class _BytesFetcher:
    def __init__(self, data: bytes | None) -> None:
        self.data = data
        self.calls: list[str] = []

    async def fetch(self, file_id: str, *, max_bytes: int) -> bytes:
        self.calls.append(file_id)
        if self.data is None:
            raise MediaNotFound(file_id)
        return self.data


def _photo_job() -> RelayJob:
    return RelayJob(
        kind=JobKind.PHOTO,
        payload=MediaRef(
            source_id="file-1",
            mime_hint="image/jpeg",
            filename="photo.jpg",
            caption="sunset",
        ),
    )


@pytest.mark.anyio
async def test_media_job_is_resolved_and_sent_as_image() -> None:
    fetcher = _BytesFetcher(b"\xff\xd8jpeg")
    sender = _RecordingSender()
    loop, queue, connection = _loop(sender, resolver=MediaResolver(fetcher=fetcher))
    connection.open()
    queue.enqueue(_photo_job())

    await loop.drain()

    assert fetcher.calls == ["file-1"]
    chat_id, content, options = sender.calls[0]
    assert chat_id == "123@g.us"
    assert isinstance(content, MediaContent)
    assert content.data == b"\xff\xd8jpeg"
    assert content.mime_type == "image/jpeg"
    assert options == SendOptions(send_as="image", caption="sunset")


@pytest.mark.anyio
async def test_media_resolution_failure_requeues_unresolved_reference() -> None:
    sender = _RecordingSender()
    loop, queue, connection = _loop(
        sender, resolver=MediaResolver(fetcher=_BytesFetcher(None))
    )
    connection.open()
    job = _photo_job()
    queue.enqueue(job)

    outcome = await loop.dispatch_batch()

    assert outcome is not None
    assert sender.attempts == []
    pending = queue.snapshot()
    assert len(pending) == 1
    assert pending[0].id == job.id
    assert pending[0].kind == JobKind.RETRY
    assert pending[0].origin_kind == JobKind.PHOTO
    assert isinstance(pending[0].payload, MediaRef)


@pytest.mark.anyio
async def test_run_drains_on_kick_and_stops() -> None:
    sender = _RecordingSender()
    loop, queue, connection = _loop(sender)

    with anyio.fail_after(2):
        async with anyio.create_task_group() as tg:
            tg.start_soon(loop.run)
            queue.enqueue(text_job("J1"))
            connection.open()
            loop.kick()
            while queue.size():
                await anyio.sleep(0.01)
            loop.stop()
            await loop.wait_stopped()

    assert sender.sent == ["J1"]


@pytest.mark.anyio
async def test_stop_cuts_retry_backoff_short() -> None:
    sender = _RecordingSender(fail={"J1"})
    options = DispatchOptions(
        concurrency=1,
        stagger_seconds=0,
        poll_interval_seconds=0.01,
        send_timeout_seconds=1,
        retry_backoff_seconds=10,
        retry_backoff_max_seconds=10,
    )
    loop, queue, connection = _loop(sender, options=options)
    queue.enqueue(text_job("J1"))
    queue.enqueue(text_job("J2"))
    connection.open()

    with anyio.fail_after(2):
        async with anyio.create_task_group() as tg:
            tg.start_soon(loop.run)
            loop.kick()
            while not sender.attempts:
                await anyio.sleep(0.01)
            await anyio.sleep(0.05)
            assert loop.is_draining is True

            loop.stop()
            await loop.wait_stopped()

    assert sender.attempts == ["J1"]
    assert queue.size() == 2


@pytest.mark.anyio
async def test_unresolvable_payload_is_a_per_job_failure() -> None:
    class _PassThroughResolver:
        async def resolve(self, ref: MediaRef) -> MediaRef:
            return ref

    sender = _RecordingSender()
    loop, queue, connection = _loop(sender, resolver=_PassThroughResolver())  # type: ignore[arg-type]
    connection.open()
    queue.enqueue(_photo_job())

    outcome = await loop.dispatch_batch()

    assert outcome is not None
    assert len(outcome.requeued) == 1
    assert sender.attempts == []


def test_dispatch_options_validate_concurrency() -> None:
    with pytest.raises(ValueError, match="concurrency must be > 0"):
        DispatchOptions(concurrency=0)
