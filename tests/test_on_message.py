import asyncio
from types import SimpleNamespace

from rolewatch_system.Listeners.on_message import MessageListener


class RecordingStore:
    def __init__(self):
        self.calls = []

    async def record_message(self, **kwargs):
        self.calls.append(kwargs)
        return True


class FakeAuthor(SimpleNamespace):
    def __str__(self):
        return self.name


def _message(role_names, bot=False, guild=True):
    author = FakeAuthor(id=101, name="alice", bot=bot)
    member = SimpleNamespace(roles=[SimpleNamespace(name=n) for n in role_names])
    return SimpleNamespace(
        author=author,
        guild=SimpleNamespace(get_member=lambda user_id: member) if guild else None,
        channel=SimpleNamespace(id=555, name="general"),
    )


def _listener():
    store = RecordingStore()
    listener = MessageListener(SimpleNamespace(activity_store=store), target_roles=["Prover", "Proofer"])
    asyncio.run(listener.cog_load())
    return listener, store


def test_member_with_target_role_is_counted():
    listener, store = _listener()

    asyncio.run(listener.on_message(_message(["@everyone", "Prover", "Artist"])))

    assert store.calls == [{
        "user_id": "101",
        "username": "alice",
        "roles": "Prover, Artist",
        "channel_id": "555",
        "channel_name": "general",
    }]


def test_messages_that_do_not_qualify_are_ignored():
    listener, store = _listener()

    asyncio.run(listener.on_message(_message(["@everyone", "Member"])))
    asyncio.run(listener.on_message(_message(["Prover"], bot=True)))
    asyncio.run(listener.on_message(_message(["Prover"], guild=False)))

    assert store.calls == []
