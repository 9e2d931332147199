import asyncio
import base64

import cv2
import numpy as np
import pytest

from attendance_tracker.enrollment import EnrollmentState, EnrollmentWorkflow, crop_box
from attendance_tracker.exceptions import EnrollmentError, EnrollmentInputError, EnrollmentSubmitError, RosterError

from conftest import FakeRosterSource


FRAME = np.full((240, 320, 3), 127, dtype=np.uint8)


def make_workflow(roster_source=None, frame=FRAME, **kwargs):
    messages = []
    workflow = EnrollmentWorkflow(
        roster_source=roster_source or FakeRosterSource(),
        frame_source=lambda: frame,
        notify=messages.append,
        debounce_seconds=kwargs.pop("debounce_seconds", 0.01),
        **kwargs,
    )
    return workflow, messages


async def wait_for_state(workflow, state, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while workflow.state is not state:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"workflow stuck in {workflow.state}")
        await asyncio.sleep(0.005)


def test_crop_box_is_clamped_to_frame():
    assert crop_box(FRAME, (10, 20, 30, 40)).shape == (40, 30, 3)
    assert crop_box(FRAME, (300, 200, 100, 100)).shape == (40, 20, 3)
    assert crop_box(FRAME, (-50, -50, 10, 10)).shape == (1, 1, 3)
    assert crop_box(np.empty((0, 0, 3), dtype=np.uint8), (0, 0, 5, 5)) is None


@pytest.mark.asyncio
async def test_capture_waits_for_debounce_then_awaits_name():
    workflow, messages = make_workflow(debounce_seconds=0.05)

    assert workflow.begin((100, 60, 80, 80)) is True
    assert workflow.state is EnrollmentState.CAPTURING
    assert workflow.pending.image == b""

    await wait_for_state(workflow, EnrollmentState.AWAITING_INPUT)

    image = cv2.imdecode(np.frombuffer(workflow.pending.image, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert image.shape[:2] == (80, 80)
    assert base64.b64decode(workflow.pending.preview_b64) == workflow.pending.image
    assert messages == ["Unknown face captured. Enter a name to enroll it."]


@pytest.mark.asyncio
async def test_second_begin_is_refused_while_pending():
    workflow, _ = make_workflow()

    assert workflow.begin((0, 0, 10, 10)) is True
    assert workflow.begin((50, 50, 10, 10)) is False
    assert workflow.pending.box == (0, 0, 10, 10)
    workflow.close()


@pytest.mark.asyncio
async def test_empty_name_is_rejected_without_registering():
    source = FakeRosterSource()
    workflow, _ = make_workflow(source)
    workflow.begin((0, 0, 20, 20))
    await wait_for_state(workflow, EnrollmentState.AWAITING_INPUT)

    with pytest.raises(EnrollmentInputError, match="Please enter a name."):
        await workflow.submit("   ")

    assert source.registered == []
    assert workflow.state is EnrollmentState.AWAITING_INPUT
    assert workflow.pending is not None


@pytest.mark.asyncio
async def test_submit_registers_then_reloads_and_returns_to_idle():
    source = FakeRosterSource()
    enrolled = []

    async def on_enrolled(name):
        enrolled.append((name, workflow.state))

    workflow, messages = make_workflow(source, on_enrolled=on_enrolled)
    workflow.begin((0, 0, 20, 20))
    await wait_for_state(workflow, EnrollmentState.AWAITING_INPUT)

    assert await workflow.submit(" Carol ") == "Carol"

    assert [name for name, _ in source.registered] == ["Carol"]
    assert source.registered[0][1] != b""
    assert enrolled == [("Carol", EnrollmentState.SUBMITTING)]
    assert workflow.state is EnrollmentState.IDLE
    assert workflow.pending is None
    assert "Face registered for Carol." in messages


@pytest.mark.asyncio
async def test_failed_registration_returns_to_idle_with_error():
    source = FakeRosterSource(fail_register=True)
    workflow, messages = make_workflow(source)
    workflow.begin((0, 0, 20, 20))
    await wait_for_state(workflow, EnrollmentState.AWAITING_INPUT)

    with pytest.raises(EnrollmentSubmitError):
        await workflow.submit("Carol")

    assert source.names == []
    assert workflow.state is EnrollmentState.IDLE
    assert "Failed to register face" in workflow.snapshot()["error"]
    assert "Failed to register face." in messages


@pytest.mark.asyncio
async def test_reload_failure_after_enrollment_is_reported_not_raised():
    async def on_enrolled(name):
        raise RosterError("roster server down")

    workflow, messages = make_workflow(on_enrolled=on_enrolled)
    workflow.begin((0, 0, 20, 20))
    await wait_for_state(workflow, EnrollmentState.AWAITING_INPUT)

    assert await workflow.submit("Carol") == "Carol"
    assert workflow.state is EnrollmentState.IDLE
    assert any("Reload after enrollment failed" in message for message in messages)


@pytest.mark.asyncio
async def test_submit_without_capture_is_refused():
    workflow, _ = make_workflow()

    with pytest.raises(EnrollmentError):
        await workflow.submit("Carol")


@pytest.mark.asyncio
async def test_cancel_during_capture_drops_pending():
    workflow, messages = make_workflow(debounce_seconds=0.05)
    workflow.begin((0, 0, 20, 20))

    assert workflow.cancel() is True
    await asyncio.sleep(0.1)

    assert workflow.state is EnrollmentState.IDLE
    assert workflow.pending is None
    assert messages == []
    assert workflow.cancel() is False


@pytest.mark.asyncio
async def test_close_resets_so_a_new_capture_can_begin():
    workflow, messages = make_workflow(debounce_seconds=0.05)
    workflow.begin((0, 0, 20, 20))

    workflow.close()
    await asyncio.sleep(0.1)

    assert workflow.state is EnrollmentState.IDLE
    assert workflow.pending is None
    assert messages == []
    assert workflow.begin((5, 5, 20, 20)) is True
    workflow.close()


@pytest.mark.asyncio
async def test_capture_without_frame_is_dropped():
    workflow, messages = make_workflow(frame=None)
    workflow.begin((0, 0, 20, 20))

    await asyncio.sleep(0.05)

    assert workflow.state is EnrollmentState.IDLE
    assert workflow.pending is None
    assert messages == []


@pytest.mark.asyncio
async def test_snapshot_exposes_pending_capture():
    workflow, _ = make_workflow()
    workflow.begin((1, 2, 30, 40))
    await wait_for_state(workflow, EnrollmentState.AWAITING_INPUT)

    snapshot = workflow.snapshot()

    assert snapshot["state"] == "awaiting_input"
    assert snapshot["pending"]["box"] == [1, 2, 30, 40]
    assert snapshot["pending"]["preview_b64"]
    assert snapshot["error"] is None
