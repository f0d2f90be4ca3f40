import uuid

from narrative_engine.services.progress_tracker import GenerationTaskRegistry, GenerationTaskState


def test_unknown_novel_is_idle():
    registry = GenerationTaskRegistry()
    novel_id = uuid.uuid4()

    task = registry.get(novel_id)

    assert task.state is GenerationTaskState.IDLE
    assert task.progress == 0
    assert task.to_dict()["state"] == "idle"


def test_lifecycle_publishes_snapshots():
    registry = GenerationTaskRegistry()
    novel_id = uuid.uuid4()
    seen = []
    registry.subscribe(novel_id, seen.append)

    registry.start(novel_id, 3)
    report = registry.reporter(novel_id)
    report("写作场景 1/3", progress=40, current_chapter=7)
    report("保存章节")
    registry.finish(novel_id)

    assert [task.state for task in seen] == [
        GenerationTaskState.ACTIVE,
        GenerationTaskState.ACTIVE,
        GenerationTaskState.ACTIVE,
        GenerationTaskState.DONE,
    ]
    assert seen[2].progress == 40
    assert seen[2].current_chapter == 7
    assert seen[1] is not seen[2]
    final = registry.get(novel_id)
    assert final.progress == 100
    assert final.total_chapters == 3


def test_progress_is_clamped_and_failure_keeps_message():
    registry = GenerationTaskRegistry()
    novel_id = uuid.uuid4()

    registry.start(novel_id, 1)
    assert registry.update(novel_id, "x", progress=150).progress == 100
    assert registry.update(novel_id, "x", progress=-5).progress == 0
    failed = registry.fail(novel_id, "模型不可用")

    assert failed.state is GenerationTaskState.FAILED
    assert failed.message == "模型不可用"


def test_unsubscribe_and_failing_listener():
    registry = GenerationTaskRegistry()
    novel_id = uuid.uuid4()
    seen = []

    def broken(task):
        raise RuntimeError("listener crashed")

    registry.subscribe(novel_id, broken)
    unsubscribe = registry.subscribe(novel_id, seen.append)
    registry.start(novel_id, 1)
    unsubscribe()
    registry.finish(novel_id)

    assert len(seen) == 1
    assert registry.get(novel_id).state is GenerationTaskState.DONE
