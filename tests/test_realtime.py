import uuid
from decimal import Decimal

import pytest
import socketio

from r6cash.errors import InsufficientFunds
from r6cash.game_engine import GameManager
from r6cash.security import TokenVerifier
from r6cash.websocket_handler import Outbox, RealtimeHub, SocketConfig, user_room


class RecordingHub:
    def __init__(self):
        self.events = []

    async def balance_updated(self, user_id, balance, available):
        self.events.append(("balance", user_id, balance, available))

    async def game_updated(self, game, participant_ids):
        self.events.append(("game", game["id"], game["status"], sorted(map(str, participant_ids))))

    async def withdrawal_updated(self, user_id, withdrawal):
        self.events.append(("withdrawal", user_id, withdrawal["status"]))


@pytest.fixture
def hub(settings):
    return RealtimeHub(TokenVerifier(settings.jwt_secret))


@pytest.fixture
def emitted(hub, monkeypatch):
    calls = []

    async def fake_emit(event, data=None, room=None, **kwargs):
        calls.append((event, data, room))

    monkeypatch.setattr(hub.sio, "emit", fake_emit)
    return calls


async def test_outbox_delivers_in_order():
    recorder = RecordingHub()
    outbox = Outbox(recorder)
    user_id = uuid.uuid4()

    outbox.game({"id": 1, "status": "waiting"}, [user_id])
    outbox.withdrawal(user_id, {"status": "pending"})
    assert recorder.events == []

    await outbox.deliver()
    assert recorder.events == [
        ("game", 1, "waiting", [str(user_id)]),
        ("withdrawal", user_id, "pending"),
    ]
    await outbox.deliver()
    assert len(recorder.events) == 2


async def test_outbox_without_hub_is_noop():
    outbox = Outbox(None)
    outbox.withdrawal(uuid.uuid4(), {"status": "pending"})
    await outbox.deliver()


async def test_events_follow_committed_changes_only(database, settings, create_user):
    recorder = RecordingHub()
    games = GameManager(database, settings, recorder)
    rich = await create_user("50")
    poor = await create_user("1")

    with pytest.raises(InsufficientFunds):
        await games.create(poor, "1v1", "10")
    assert recorder.events == []

    game = await games.create(rich, "1v1", "10")
    assert recorder.events == [
        ("balance", rich, Decimal("40.00"), Decimal("40.00")),
        ("game", game["id"], "waiting", [str(rich)]),
    ]


async def test_connect_without_token_is_refused(hub):
    with pytest.raises(socketio.exceptions.ConnectionRefusedError):
        await hub._on_connect("sid-1", {}, None)
    with pytest.raises(socketio.exceptions.ConnectionRefusedError):
        await hub._on_connect("sid-2", {}, {"token": "forged"})


async def test_connect_joins_user_and_lobby_rooms(hub, token, monkeypatch):
    user_id = uuid.uuid4()
    sessions, rooms = {}, []

    async def save_session(sid, session, namespace=None):
        sessions[sid] = session

    async def enter_room(sid, room, namespace=None):
        rooms.append((sid, room))

    monkeypatch.setattr(hub.sio, "save_session", save_session)
    monkeypatch.setattr(hub.sio, "enter_room", enter_room)

    await hub._on_connect("sid-9", {}, {"token": token(user_id)})
    assert sessions == {"sid-9": {"user_id": str(user_id)}}
    assert rooms == [("sid-9", user_room(user_id)), ("sid-9", SocketConfig.LOBBY_ROOM)]


async def test_game_update_reaches_participants_and_lobby(hub, emitted):
    a, b = uuid.uuid4(), uuid.uuid4()
    await hub.game_updated({"id": 7, "stake": Decimal("20.00"), "players": [a, b]}, [a, b, a])

    rooms = sorted(room for _, _, room in emitted)
    assert rooms == sorted([user_room(a), user_room(b), SocketConfig.LOBBY_ROOM])
    assert emitted[0][1] == {"id": 7, "stake": "20.00", "players": [str(a), str(b)]}


async def test_balance_update_is_private(hub, emitted):
    user_id = uuid.uuid4()
    await hub.balance_updated(user_id, Decimal("68.00"), Decimal("48.00"))
    assert emitted == [(
        "balance_updated",
        {"user_id": str(user_id), "balance": "68.00", "available_balance": "48.00"},
        user_room(user_id),
    )]


async def test_delivery_failure_is_swallowed(hub, monkeypatch):
    async def broken_emit(*args, **kwargs):
        raise ConnectionError("redis down")

    monkeypatch.setattr(hub.sio, "emit", broken_emit)
    await hub.withdrawal_updated(uuid.uuid4(), {"status": "processed"})


def test_asgi_app_wraps_api(hub, app):
    assert isinstance(hub.asgi_app(app), socketio.ASGIApp)


def test_socket_origins_match_site(services, settings):
    assert services.hub.sio.eio.cors_allowed_origins == [settings.public_site_url]
