from flowpilot.clients.database import Flow as FlowORM, session_scope
from flowpilot.models.enums import RunStatus, TriggerType
from flowpilot.models.trigger import TriggerData

TRIGGER = ("t", "trigger", {})


def test_keyword_trigger_matches_substring_case_insensitively(trigger_manager, make_flow, flow_service):
    flow = make_flow(
        [TRIGGER, ("send", "send_message", {"message": "Our prices start at $10"})],
        [("t", "send")],
        trigger_type=TriggerType.KEYWORD,
        trigger_config={"keywords": ["price"]},
    )

    started = trigger_manager.check_triggers(
        TriggerType.KEYWORD, TriggerData(conversation_id="conv-1", message="What's the PRICE?")
    )
    ignored = trigger_manager.check_triggers(
        TriggerType.KEYWORD, TriggerData(conversation_id="conv-1", message="what's the cost?")
    )

    assert len(started) == 1
    assert ignored == []
    run = flow_service.get_run(started[0])
    assert run.flow_id == flow.id
    assert run.context["message"] == "What's the PRICE?"
    assert run.context["triggerType"] == "keyword"


def test_schedule_flows_never_start_from_events(trigger_manager, make_flow):
    make_flow([TRIGGER], trigger_type=TriggerType.SCHEDULE, trigger_config={"cron": "0 9 * * *"})

    assert trigger_manager.check_triggers(TriggerType.SCHEDULE, TriggerData()) == []


def test_only_active_flows_of_the_event_type_start(trigger_manager, make_flow):
    active = make_flow([TRIGGER], trigger_type=TriggerType.NEW_CONTACT)
    make_flow([TRIGGER], trigger_type=TriggerType.NEW_CONTACT, active=False)
    make_flow([TRIGGER], trigger_type=TriggerType.MESSAGE_RECEIVED)

    started = trigger_manager.check_triggers(TriggerType.NEW_CONTACT, TriggerData(contact_id="contact-1"))

    assert len(started) == 1
    assert trigger_manager.flows.get_run(started[0]).flow_id == active.id


def test_webhook_trigger_requires_exact_id(trigger_manager, make_flow, flow_service):
    flow = make_flow(
        [TRIGGER],
        trigger_type=TriggerType.WEBHOOK,
        trigger_config={"webhookId": "orders"},
    )

    started = trigger_manager.handle_webhook_trigger("orders", {"orderId": 42, "conversationId": "conv-9"})

    assert trigger_manager.handle_webhook_trigger("Orders", {}) == []
    assert len(started) == 1
    run = flow_service.get_run(started[0])
    assert run.flow_id == flow.id
    assert run.conversation_id == "conv-9"
    assert run.context["orderId"] == 42
    assert run.context["webhookId"] == "orders"


def test_failure_in_one_flow_does_not_stop_others(trigger_manager, make_flow, flow_service, monkeypatch):
    broken = make_flow([TRIGGER], trigger_type=TriggerType.MESSAGE_RECEIVED, name="Broken")
    healthy = make_flow([TRIGGER], trigger_type=TriggerType.MESSAGE_RECEIVED, name="Healthy")
    original = trigger_manager.engine.start_flow

    def flaky_start(flow_id, **kwargs):
        if flow_id == broken.id:
            raise RuntimeError("boom")
        return original(flow_id, **kwargs)

    monkeypatch.setattr(trigger_manager.engine, "start_flow", flaky_start)

    started = trigger_manager.check_triggers(TriggerType.MESSAGE_RECEIVED, TriggerData(message="hi"))

    assert len(started) == 1
    assert flow_service.get_run(started[0]).flow_id == healthy.id


def test_unreadable_trigger_config_only_skips_that_flow(trigger_manager, make_flow, flow_service):
    bad = make_flow([TRIGGER], trigger_type=TriggerType.KEYWORD, trigger_config={"keywords": ["x"]}, name="Bad")
    good = make_flow(
        [TRIGGER], trigger_type=TriggerType.KEYWORD, trigger_config={"keywords": ["price"]}, name="Good"
    )
    with session_scope() as db:
        db.get(FlowORM, bad.id).trigger_config = {"keywords": 5}

    started = trigger_manager.check_triggers(
        TriggerType.KEYWORD, TriggerData(conversation_id="conv-1", message="the price")
    )

    assert len(started) == 1
    assert flow_service.get_run(started[0]).flow_id == good.id


def test_manual_trigger_starts_any_trigger_type(trigger_manager, make_flow, flow_service):
    flow = make_flow([TRIGGER], trigger_type=TriggerType.KEYWORD, trigger_config={"keywords": ["x"]})

    run_id = trigger_manager.manual_trigger(flow.id, TriggerData(payload={"test": True}))

    run = flow_service.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.context["test"] is True
    assert run.context["triggerType"] == "manual"


def test_inbound_reply_resumes_waiting_runs(trigger_manager, make_flow, flow_service, messages):
    flow = make_flow(
        [
            TRIGGER,
            ("wait", "wait_reply", {}),
            ("check", "condition", {"expression": "lastMessage contains yes"}),
            ("confirm", "send_message", {"message": "Booked!"}),
        ],
        [("t", "wait"), ("wait", "check"), ("check", "confirm", "yes")],
        trigger_type=TriggerType.MESSAGE_RECEIVED,
    )
    [run_id] = trigger_manager.check_triggers(
        TriggerType.MESSAGE_RECEIVED, TriggerData(conversation_id="conv-1", message="book me")
    )

    assert trigger_manager.handle_inbound_reply("conv-other", "yes") == []
    assert trigger_manager.handle_inbound_reply("conv-1", "Yes please", event_id="m-2") == [run_id]
    assert trigger_manager.handle_inbound_reply("conv-1", "Yes please", event_id="m-2") == []

    run = flow_service.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.context["lastMessage"] == "Yes please"
    assert messages.sent == [("conv-1", "Booked!")]
    assert flow.id == run.flow_id
