from src.core.logging import LogContext, add_app_context, clear_image_context, set_image_context


def _event():
    return add_app_context(None, "info", {"event": "stage_completed"})


def test_log_context_scopes_owner_image_and_stage():
    with LogContext(image_id="img-1", owner_id="user-1") as ctx:
        ctx.set_stage("background_removal")
        event = _event()
        assert (event["owner_id"], event["image_id"], event["stage"]) == ("user-1", "img-1", "background_removal")

        ctx.set_stage("thumbnail")
        assert _event()["stage"] == "thumbnail"

    event = _event()
    assert "owner_id" not in event
    assert "image_id" not in event
    assert "stage" not in event


def test_nested_context_restores_outer_values():
    with LogContext(owner_id="user-1"):
        with LogContext(image_id="img-2", stage="retry"):
            assert _event()["owner_id"] == "user-1"
        event = _event()
        assert event["owner_id"] == "user-1"
        assert "image_id" not in event


def test_explicit_fields_win_over_context():
    with LogContext(image_id="img-1"):
        event = add_app_context(None, "info", {"event": "x", "image_id": "other"})
    assert event["image_id"] == "other"


def test_task_context_is_cleared():
    set_image_context("img-3", "pipeline")
    assert _event()["image_id"] == "img-3"

    clear_image_context()

    assert "image_id" not in _event()
