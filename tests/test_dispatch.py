import threading

from mediavariants.dispatch import JobDispatcher, RequestBatch


def test_request_batch_coalesces_and_flushes_once():
    seen = []
    batch = RequestBatch(lambda asset_id: seen.append(asset_id) or "ok")

    assert batch.add("a1")
    assert not batch.add("a1")
    assert batch.add("a2")
    assert batch.pending == ["a1", "a2"]

    assert batch.flush() == {"a1": "ok", "a2": "ok"}
    assert seen == ["a1", "a2"]
    assert batch.flush() == {}
    assert not batch.add("a3")
    assert seen == ["a1", "a2"]


def test_request_batch_handler_errors_are_reported():
    def handler(asset_id):
        if asset_id == "bad":
            raise RuntimeError("encoder crashed")
        return "ok"

    batch = RequestBatch(handler)
    batch.add("bad")
    batch.add("good")

    results = batch.flush()

    assert results["bad"] == {"error": "encoder crashed"}
    assert results["good"] == "ok"


def test_dispatcher_runs_job():
    dispatcher = JobDispatcher(max_workers=1)
    done = threading.Event()
    dispatcher.register("job", lambda value: done.set())
    try:
        assert dispatcher.enqueue("job", ("x",)) is not None
        assert done.wait(5)
    finally:
        dispatcher.shutdown()
    assert dispatcher.pending_jobs() == []


def test_dispatcher_never_queues_duplicate_while_pending():
    dispatcher = JobDispatcher(max_workers=1)
    release = threading.Event()
    started = threading.Event()
    runs = []

    def handler(asset_id):
        started.set()
        release.wait(5)
        runs.append(asset_id)

    dispatcher.register("convert", handler)
    try:
        job_id = dispatcher.enqueue("convert", ("a1",))
        assert started.wait(5)
        assert dispatcher.is_pending("convert", ("a1",))
        assert dispatcher.enqueue("convert", ("a1",)) is None
        assert [j.job_id for j in dispatcher.pending_jobs()] == [job_id]
        assert dispatcher.pending_jobs()[0].to_dict()["args"] == ["a1"]
        release.set()
    finally:
        dispatcher.shutdown()

    assert runs == ["a1"]
    assert not dispatcher.is_pending("convert", ("a1",))


def test_dispatcher_unknown_job():
    dispatcher = JobDispatcher(max_workers=1)
    try:
        assert dispatcher.enqueue("missing", ("a1",)) is None
    finally:
        dispatcher.shutdown()


def test_failed_job_is_no_longer_pending():
    dispatcher = JobDispatcher(max_workers=1)

    def handler(asset_id):
        raise RuntimeError("boom")

    dispatcher.register("convert", handler)
    dispatcher.enqueue("convert", ("a1",))
    dispatcher.shutdown()

    assert not dispatcher.is_pending("convert", ("a1",))


def test_shutdown_can_drop_jobs_that_have_not_started():
    dispatcher = JobDispatcher(max_workers=1)
    release = threading.Event()
    started = threading.Event()
    runs = []

    def handler(asset_id):
        started.set()
        release.wait(5)
        runs.append(asset_id)

    dispatcher.register("convert", handler)
    dispatcher.enqueue("convert", ("a1",))
    assert started.wait(5)
    dispatcher.enqueue("convert", ("a2",))
    running = dispatcher.pending_jobs()[0].future

    dispatcher.shutdown(wait=False, cancel_futures=True)

    assert dispatcher.is_pending("convert", ("a1",))
    assert not dispatcher.is_pending("convert", ("a2",))
    release.set()
    running.result(timeout=5)
    assert runs == ["a1"]
    assert dispatcher.pending_jobs() == []
