"""Integration tests — full broker lifecycle through the HTTP app.

Validates the complete path: MQTT reading → registry → WebSocket
push, client command → control topic publish → acknowledgement, and
rules save → broadcast to every connected viewer.  Messages enter
through the MockMqttClient's registered callback exactly as the real
client would dispatch them.

Test Techniques Used:
    - Integration Testing: end-to-end flows via create_app + TestClient.
    - State-based Testing: verify published messages and pushed frames.
    - Scenario Testing: farm walkthrough with two sensor nodes.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from farmhub._http import create_app
from farmhub._mqtt import MockMqttClient
from farmhub._settings import LivenessSettings
from farmhub.testing import FakeClock, make_settings

pytestmark = pytest.mark.integration

_START = 1_700_000_000.0
_START_MS = 1_700_000_000_000


@pytest.fixture
def mqtt() -> MockMqttClient:
    return MockMqttClient()


@pytest.fixture
def client(mqtt: MockMqttClient) -> Iterator[TestClient]:
    app = create_app(
        make_settings(liveness=LivenessSettings(timeout=0.1)),
        mqtt=mqtt,
        clock=FakeClock(_START),
        version="0.1.0",
    )
    with TestClient(app) as test_client:
        yield test_client


def _publish(client: TestClient, mqtt: MockMqttClient, topic: str, reading: dict[str, object]) -> None:
    """Deliver a sensor reading through the MQTT callback."""
    client.portal.call(mqtt.deliver, topic, json.dumps(reading))  # type: ignore[union-attr]


def _wait(client: TestClient, seconds: float) -> None:
    client.portal.call(asyncio.sleep, seconds)  # type: ignore[union-attr]


class TestFarmWalkthrough:
    """End-to-end scenarios for a farm with two sensor nodes.

    Technique: Integration Testing — every frame observed by a real
    WebSocket session.
    """

    def test_app_subscribes_on_startup(self, client: TestClient, mqtt: MockMqttClient) -> None:
        assert mqtt.subscriptions == ["farm/+/sensor"]

    def test_reading_reaches_viewer(self, client: TestClient, mqtt: MockMqttClient) -> None:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json() == {"event": "sensor:snapshot", "data": []}

            _publish(
                client,
                mqtt,
                "farm/node-1/sensor",
                {"temperature": 30.5, "humidity": 55, "relay_status": False, "mode": "auto"},
            )

            data = ws.receive_json()
            status = ws.receive_json()

        assert data["event"] == "sensor:data"
        assert data["data"]["deviceId"] == "node-1"
        assert data["data"]["temperature"] == 30.5
        assert data["data"]["receivedAt"] == _START_MS
        assert status == {
            "event": "device:status",
            "data": {"deviceId": "node-1", "online": True, "at": _START_MS},
        }

    def test_set_pump_from_viewer(self, client: TestClient, mqtt: MockMqttClient) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json(
                {
                    "event": "control:send",
                    "id": 7,
                    "data": {"deviceId": "node-1", "cmd": "setPump", "pump": True},
                }
            )
            ack = ws.receive_json()

        assert ack["id"] == 7
        assert ack["data"]["ok"] is True
        ((payload, _retain, _qos),) = mqtt.get_messages_for("farm/node-1/control")
        assert json.loads(payload) == {"cmd": "setPump", "pump": True}

    def test_set_pump_over_http(self, client: TestClient, mqtt: MockMqttClient) -> None:
        response = client.post(
            "/api/control", json={"deviceId": "node-1", "cmd": "setPump", "pump": False}
        )

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert len(mqtt.get_messages_for("farm/node-1/control")) == 1

    def test_silent_node_goes_offline_exactly_once(
        self, client: TestClient, mqtt: MockMqttClient
    ) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            _publish(client, mqtt, "farm/node-2/sensor", {"soil_moisture": 40})
            assert ws.receive_json()["event"] == "sensor:data"
            assert ws.receive_json()["data"]["online"] is True

            offline = ws.receive_json()
            _wait(client, 0.3)
            # Round-trip a marker frame: nothing else may be queued ahead of its ack.
            ws.send_json({"event": "ping", "id": "marker"})
            marker = ws.receive_json()

        assert offline == {
            "event": "device:status",
            "data": {"deviceId": "node-2", "online": False, "at": _START_MS},
        }
        assert marker["event"] == "ack"
        assert marker["id"] == "marker"
        (device,) = client.get("/api/last").json()["devices"]
        assert device["online"] is False

    def test_rules_save_broadcast_to_all_viewers(
        self, client: TestClient, mqtt: MockMqttClient
    ) -> None:
        rules = [{"if": "soil_moisture<30", "then": "pump_on"}]
        with (
            client.websocket_connect("/ws") as saver,
            client.websocket_connect("/ws") as watcher,
        ):
            saver.receive_json()
            watcher.receive_json()

            saver.send_json(
                {"event": "rules:save", "id": 1, "data": {"deviceId": "node-2", "rules": rules}}
            )
            ack = saver.receive_json()
            pushed = watcher.receive_json()

        assert ack["data"] == {"ok": True, "savedAt": _START_MS}
        assert pushed == {
            "event": "rules:snapshot",
            "data": [{"deviceId": "node-2", "rules": rules, "savedAt": _START_MS}],
        }
        ((payload, _retain, _qos),) = mqtt.get_messages_for("farm/node-2/control")
        assert json.loads(payload) == {"cmd": "setRules", "rules": rules, "savedAt": _START_MS}

    def test_late_viewer_gets_snapshot(self, client: TestClient, mqtt: MockMqttClient) -> None:
        _publish(client, mqtt, "farm/node-1/sensor", {"temperature": 21})
        _publish(client, mqtt, "farm/node-2/sensor", {"humidity": 60})

        with client.websocket_connect("/ws") as ws:
            snapshot = ws.receive_json()

        assert snapshot["event"] == "sensor:snapshot"
        assert sorted(d["deviceId"] for d in snapshot["data"]) == ["node-1", "node-2"]

    def test_shutdown_publishes_offline(self, mqtt: MockMqttClient) -> None:
        app = create_app(make_settings(), mqtt=mqtt, clock=FakeClock(_START))
        with TestClient(app):
            pass

        assert mqtt.get_messages_for("farmhub/status")[-1] == ("offline", True, 1)
