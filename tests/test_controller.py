from __future__ import annotations

import json

import pytest
from conftest import FakeHost

from browser_relay.errors import ActionError, NoTargetBound, TargetNotFound
from browser_relay.session.controller import TYPE_FUNCTION, TargetSessionController, build_call_params
from browser_relay.session.events import EventBus, ProtocolEvent


@pytest.mark.asyncio
async def test_navigate_without_binding_creates_and_binds_target(controller: TargetSessionController, host: FakeHost) -> None:
    result = await controller.navigate("https://example.com")

    assert result == {"targetId": 100}
    assert controller.connected_target_id == 100
    assert host.targets[100].url == "https://example.com"


@pytest.mark.asyncio
async def test_navigate_with_binding_updates_target_in_place(controller: TargetSessionController, host: FakeHost) -> None:
    await controller.navigate("https://example.com")
    result = await controller.navigate("https://example.org")

    assert result == {"targetId": 100}
    assert len(host.targets) == 1
    assert host.updates[-1] == (100, "https://example.org", True)


@pytest.mark.asyncio
async def test_list_targets_excludes_privileged_schemes(controller: TargetSessionController, host: FakeHost) -> None:
    host.add_target("https://example.com")
    host.add_target("chrome://settings")
    host.add_target("https://mail.example.com")
    host.add_target("devtools://devtools/bundled/inspector.html")
    host.add_target("http://localhost:3000")

    result = await controller.list_targets()

    assert len(result["targets"]) == 3
    assert all(not t["url"].startswith(("chrome:", "devtools:")) for t in result["targets"])
    assert result["connectedTargetId"] is None


@pytest.mark.asyncio
async def test_select_target_binds_and_focuses(controller: TargetSessionController, host: FakeHost) -> None:
    target = host.add_target("https://example.com")

    result = await controller.select_target(target.id)

    assert result == {"targetId": target.id}
    assert controller.connected_target_id == target.id
    assert host.targets[target.id].active
    assert host.focused == [target.id]


@pytest.mark.asyncio
async def test_select_unknown_target_raises_not_found(controller: TargetSessionController) -> None:
    with pytest.raises(TargetNotFound):
        await controller.select_target(999)
    assert controller.connected_target_id is None


@pytest.mark.asyncio
async def test_select_privileged_target_is_not_eligible(controller: TargetSessionController, host: FakeHost) -> None:
    target = host.add_target("chrome://extensions")

    with pytest.raises(TargetNotFound):
        await controller.select_target(target.id)


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["click", "type", "snapshot", "screenshot"])
async def test_actions_require_bound_target(controller: TargetSessionController, action: str) -> None:
    calls = {
        "click": lambda: controller.click("#submit"),
        "type": lambda: controller.type_text("#q", "hello"),
        "snapshot": controller.snapshot,
        "screenshot": controller.screenshot,
    }
    with pytest.raises(NoTargetBound):
        await calls[action]()


@pytest.mark.asyncio
async def test_ensure_attached_is_idempotent(controller: TargetSessionController, host: FakeHost) -> None:
    target = host.add_target("https://example.com")
    await controller.select_target(target.id)

    first = await controller.ensure_attached()
    second = await controller.ensure_attached()

    assert first is second
    assert host.attach_calls == [(target.id, "1.3")]
    assert controller.binding.attached_target_id == target.id


@pytest.mark.asyncio
async def test_rebinding_detaches_previous_session(controller: TargetSessionController, host: FakeHost) -> None:
    a = host.add_target("https://a.example.com")
    b = host.add_target("https://b.example.com")
    await controller.select_target(a.id)
    await controller.ensure_attached()

    await controller.select_target(b.id)

    assert host.sessions[0].detached
    binding = controller.binding
    assert binding.active_target_id == b.id
    assert binding.attached_target_id is None


@pytest.mark.asyncio
async def test_events_for_previous_target_are_not_delivered(host: FakeHost, events: EventBus) -> None:
    controller = TargetSessionController(host, events)
    delivered: list[ProtocolEvent] = []
    controller.on_protocol_event = delivered.append
    a = host.add_target("https://a.example.com")
    b = host.add_target("https://b.example.com")

    await controller.select_target(a.id)
    await controller.ensure_attached()
    await events.publish(ProtocolEvent(a.id, "Page.loadEventFired"))
    assert [e.target_id for e in delivered] == [a.id]

    await controller.select_target(b.id)
    await controller.ensure_attached()
    await events.publish(ProtocolEvent(a.id, "Page.loadEventFired"))
    await events.publish(ProtocolEvent(b.id, "Page.loadEventFired"))

    assert [e.target_id for e in delivered] == [a.id, b.id]
    assert events.subscriber_count(a.id) == 0
    assert events.subscriber_count(b.id) == 1


@pytest.mark.asyncio
async def test_detach_failure_is_suppressed(controller: TargetSessionController, host: FakeHost) -> None:
    host.fail_detach = True
    a = host.add_target("https://a.example.com")
    b = host.add_target("https://b.example.com")
    await controller.select_target(a.id)
    await controller.ensure_attached()

    await controller.select_target(b.id)
    await controller.ensure_attached()

    assert host.attach_calls == [(a.id, "1.3"), (b.id, "1.3")]


@pytest.mark.asyncio
async def test_click_runs_function_with_selector_argument(controller: TargetSessionController, host: FakeHost) -> None:
    await controller.navigate("https://example.com")

    result = await controller.click("button[name='go']")

    assert result == {"clicked": True}
    method, params = host.sessions[0].sent[-1]
    assert method == "Runtime.callFunctionOn"
    assert params["objectId"] == "document-1"
    assert params["arguments"] == [{"value": "button[name='go']"}]
    assert "button[name='go']" not in params["functionDeclaration"]


@pytest.mark.asyncio
async def test_missing_element_reports_false(controller: TargetSessionController, host: FakeHost) -> None:
    await controller.navigate("https://example.com")
    host.element_found = False

    assert await controller.click("#missing") == {"clicked": False}
    assert await controller.type_text("#missing", "hello") == {"typed": False}


@pytest.mark.asyncio
async def test_script_exception_is_reported_verbatim(controller: TargetSessionController, host: FakeHost) -> None:
    await controller.navigate("https://example.com")
    host.script_exception = "SyntaxError: '##' is not a valid selector"

    with pytest.raises(ActionError, match="is not a valid selector"):
        await controller.click("##")


@pytest.mark.asyncio
async def test_type_text_payload_round_trips(controller: TargetSessionController, host: FakeHost) -> None:
    await controller.navigate("https://example.com")

    await controller.type_text("#q", "it's a test")

    _, params = host.sessions[0].sent[-1]
    payload = json.loads(json.dumps(params))["arguments"][1]["value"]
    assert payload == "it's a test"


@pytest.mark.parametrize(
    "text",
    ["it's a test", "back\\slash", "</script><script>alert(1)</script>", "line\nbreak", '"double"', " "],
)
def test_call_params_never_splice_text_into_source(text: str) -> None:
    params = build_call_params(TYPE_FUNCTION, "document-1", "#q", text)

    assert params["functionDeclaration"] == TYPE_FUNCTION
    assert json.loads(json.dumps(params))["arguments"][1]["value"] == text


@pytest.mark.asyncio
async def test_snapshot_returns_accessibility_nodes(controller: TargetSessionController) -> None:
    await controller.navigate("https://example.com")

    result = await controller.snapshot()

    assert result["snapshot"][0]["role"]["value"] == "RootWebArea"


@pytest.mark.asyncio
async def test_screenshot_returns_data_url(controller: TargetSessionController) -> None:
    await controller.navigate("https://example.com")

    result = await controller.screenshot()

    assert result["screenshot"].startswith("data:image/png;base64,")


@pytest.mark.asyncio
async def test_teardown_detaches_and_clears_binding(controller: TargetSessionController, host: FakeHost) -> None:
    await controller.navigate("https://example.com")
    await controller.ensure_attached()

    await controller.teardown()

    assert host.sessions[0].detached
    assert controller.connected_target_id is None
    assert controller.binding.attached_target_id is None


@pytest.mark.asyncio
async def test_removed_bound_target_resets_binding(controller: TargetSessionController, host: FakeHost) -> None:
    await controller.navigate("https://example.com")
    other = host.add_target("https://other.example.com")

    await controller.on_target_removed(other.id)
    assert controller.connected_target_id == 100

    await controller.on_target_removed(100)
    assert controller.connected_target_id is None


@pytest.mark.asyncio
async def test_inspector_detached_forces_reattach(host: FakeHost, events: EventBus) -> None:
    controller = TargetSessionController(host, events)
    await controller.navigate("https://example.com")
    await controller.ensure_attached()

    await events.publish(ProtocolEvent(100, "Inspector.detached", {"reason": "canceled_by_user"}))
    await controller.ensure_attached()

    assert len(host.attach_calls) == 2
