import pytest

from fleetsync.exceptions import UnrecognizedStatus
from fleetsync.models import StepStatus, StepType, TaskStatus
from fleetsync.outcome import Found, StepNotFound, TaskNotFound
from fleetsync.task_tracker import TaskStatusTracker, is_ignored_step


@pytest.mark.parametrize(
    "step_type,ignored",
    [
        ("drive_to_pose", True),
        ("localize", True),
        ("move_arm", True),
        ("return_to_home", True),
        ("DriveToPose", True),
        ("take_image", False),
        ("take_thermal_video", False),
        (StepType.RECORD_AUDIO, False),
    ],
)
def test_navigation_steps_are_ignored(step_type, ignored):
    assert is_ignored_step(step_type) is ignored


def test_unknown_step_type_is_rejected():
    with pytest.raises(UnrecognizedStatus):
        is_ignored_step("teleport")


@pytest.mark.asyncio
async def test_task_update_writes_and_republishes_run(seed, repository, notifier):
    robot = await seed.robot()
    await seed.run("M100", robot=robot)
    tracker = TaskStatusTracker(repository, notifier)

    result = await tracker.update_task_status("M100-task-0", "in_progress", "M100")

    assert isinstance(result, Found)
    run = (await repository.run_by_external_id("M100")).value
    assert run.tasks[0].status == TaskStatus.IN_PROGRESS
    assert run.tasks[0].started_at is not None
    published = notifier.named("Mission run updated")
    assert len(published) == 1
    assert published[0][1]["external_mission_id"] == "M100"
    assert published[0][1]["tasks"][0]["status"] == "InProgress"


@pytest.mark.asyncio
async def test_unknown_task_fails_softly(repository, notifier):
    tracker = TaskStatusTracker(repository, notifier)

    result = await tracker.update_task_status("nope", "successful", "M100")

    assert isinstance(result, TaskNotFound)
    assert notifier.published == []


@pytest.mark.asyncio
async def test_step_update_writes_status(seed, repository, notifier):
    robot = await seed.robot()
    await seed.run("M100", robot=robot)
    tracker = TaskStatusTracker(repository, notifier)

    result = await tracker.update_step_status("M100-step-0", "take_image", "successful", "M100")

    assert isinstance(result, Found)
    run = (await repository.run_by_external_id("M100")).value
    step = run.tasks[0].inspections[0]
    assert step.status == StepStatus.SUCCESSFUL
    assert len(notifier.named("Mission run updated")) == 1


@pytest.mark.asyncio
async def test_ignored_step_never_reaches_storage(seed, repository, notifier, monkeypatch):
    robot = await seed.robot()
    await seed.run("M100", robot=robot)
    tracker = TaskStatusTracker(repository, notifier)

    async def fail(*args):
        raise AssertionError("ignored steps must not be written")

    monkeypatch.setattr(repository, "update_step_status", fail)

    assert await tracker.update_step_status("M100-step-0", "drive_to_pose", "successful", "M100") is None
    assert notifier.published == []


@pytest.mark.asyncio
async def test_unknown_step_fails_softly(repository, notifier):
    result = await TaskStatusTracker(repository, notifier).update_step_status("nope", "take_image", "failed")
    assert isinstance(result, StepNotFound)


@pytest.mark.asyncio
async def test_unparseable_step_status_is_rejected(seed, repository, notifier):
    robot = await seed.robot()
    await seed.run("M100", robot=robot)

    with pytest.raises(UnrecognizedStatus):
        await TaskStatusTracker(repository, notifier).update_step_status("M100-step-0", "take_image", "exploded")

    run = (await repository.run_by_external_id("M100")).value
    assert run.tasks[0].inspections[0].status == StepStatus.NOT_STARTED


@pytest.mark.asyncio
async def test_missing_run_only_skips_republish(seed, repository, notifier):
    robot = await seed.robot()
    await seed.run("M100", robot=robot)

    result = await TaskStatusTracker(repository, notifier).update_task_status("M100-task-0", "successful", "OTHER")

    assert isinstance(result, Found)
    assert notifier.published == []
