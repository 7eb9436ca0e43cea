"""
Tests for the chat client: messenger flows through an in-process relay,
group-event rules, local stores, vault and settings.
"""

import asyncio

from crypto.errors import (
    AuthenticationFailure,
    ChatError,
    InvalidKey,
    InvalidSignature,
    MalformedEnvelope,
    StaleOrDuplicateIndex,
    TransportUnavailable,
    UnknownSender,
)
from crypto.identity import generate_identity
from crypto.primitives import b64decode, b64encode
from crypto.sender_keys import MemorySenderKeyStore, SenderKeyRatchet
from crypto.session import derive_session_key
from relay.envelopes import GroupEvent, GroupEventEnvelope, MessageEnvelope, encode_envelope, parse_envelope
from relay.registry import Connection, ConnectionRegistry
from relay.router import Router
from client.app import open_messenger, open_vault
from client.config import ClientSettings
from client.connection import RelayConnection
from client.contacts import ContactBook, SessionKeyCache
from client.database import Database, DatabaseGroupDirectory, DatabaseSenderKeyStore
from client.groups import Group, MemoryGroupDirectory, apply_group_event, open_event, seal_event
from client.messenger import GroupPermissionError, SecureMessenger, UnknownGroup
from client.storage import IdentityVault, UnlockedIdentity, VaultLocked


class Inbox:
    """Socket stand-in that collects the frames the relay forwards"""

    def __init__(self):
        self.frames = []

    async def send_text(self, data):
        self.frames.append(data)


class LoopbackTransport:
    """Hands envelopes straight to a relay Router"""

    def __init__(self, router, connection):
        self.router = router
        self.connection = connection

    async def send(self, envelope):
        await self.router.handle_frame(self.connection, encode_envelope(envelope))


class Peer:
    def __init__(self, router, name, settings=None, sender_keys=None, groups=None):
        self.identity = UnlockedIdentity(identity_id=name, codename=name, keys=generate_identity())
        self.inbox = Inbox()
        self.connection = Connection(self.inbox, name)
        router.registry.register(self.public_key, self.connection)
        self.messenger = SecureMessenger(
            self.identity,
            LoopbackTransport(router, self.connection),
            sender_keys or MemorySenderKeyStore(),
            groups or MemoryGroupDirectory(),
            settings
        )
        self.received = []
        self.failures = []

    @property
    def public_key(self):
        return self.identity.public_key

    @property
    def store(self):
        return self.messenger.ratchet.store

    def texts(self):
        return [m.text for m in self.received]


def _relay():
    return Router(ConnectionRegistry())


async def pump(*peers):
    """Deliver queued frames until every inbox is empty"""
    while any(p.inbox.frames for p in peers):
        for peer in peers:
            frames, peer.inbox.frames = peer.inbox.frames, []
            for raw in frames:
                try:
                    message = await peer.messenger.handle_envelope(parse_envelope(raw))
                except ChatError as e:
                    peer.failures.append(e)
                    continue
                if message is not None:
                    peer.received.append(message)


def test_direct_message():
    async def run():
        router = _relay()
        alice, bob = Peer(router, "alice"), Peer(router, "bob")
        await alice.messenger.send_direct(bob.public_key, "hello bob")
        await pump(alice, bob)

        assert bob.texts() == ["hello bob"]
        message = bob.received[0]
        assert message.sender == alice.public_key
        assert message.group_id is None

        await bob.messenger.send_direct(alice.public_key, "hi alice")
        await pump(alice, bob)
        assert alice.texts() == ["hi alice"]
        assert not alice.failures and not bob.failures
    asyncio.run(run())


def test_direct_message_to_offline_peer_is_dropped():
    async def run():
        router = _relay()
        alice = Peer(router, "alice")
        offline = generate_identity().public_key_b64
        await alice.messenger.send_direct(offline, "anyone?")
        assert router.registry.online_keys() == [alice.public_key]
    asyncio.run(run())


def _group_flow(wire_format):
    async def run():
        router = _relay()
        settings = ClientSettings(group_wire_format=wire_format)
        alice, bob, charlie = (Peer(router, n, settings) for n in ("alice", "bob", "charlie"))
        peers = (alice, bob, charlie)

        group = await alice.messenger.create_group("Team", [bob.public_key, charlie.public_key])
        await pump(*peers)
        for peer in (bob, charlie):
            copy = await peer.messenger.groups.get_group(group.group_id)
            assert copy.creator_public_key == alice.public_key
            assert set(copy.members) == {p.public_key for p in peers}
            assert (await peer.store.load(group.group_id, alice.public_key)).message_index == 0

        await alice.messenger.send_group_message(group.group_id, "Hello Team")
        await pump(*peers)
        assert bob.texts() == ["Hello Team"]
        assert charlie.texts() == ["Hello Team"]
        assert bob.received[0].group_id == group.group_id
        assert bob.received[0].counter == 0

        # bob's first message distributes his own bundle first
        await bob.messenger.send_group_message(group.group_id, "hi all")
        await alice.messenger.send_group_message(group.group_id, "second")
        await pump(*peers)
        assert alice.texts() == ["hi all"]
        assert charlie.texts() == ["Hello Team", "hi all", "second"]
        assert not any(p.failures for p in peers)
    asyncio.run(run())


def test_group_messages_as_message_envelopes():
    _group_flow("message")


def test_group_messages_as_group_packets():
    _group_flow("group-message")


async def _team(router, settings=None):
    alice, bob, carol = (Peer(router, n, settings) for n in ("alice", "bob", "carol"))
    group = await alice.messenger.create_group("Team", [bob.public_key, carol.public_key])
    await pump(alice, bob, carol)
    for peer in (alice, bob, carol):
        await peer.messenger.send_group_message(group.group_id, f"hi from {peer.identity.codename}")
    await pump(alice, bob, carol)
    return alice, bob, carol, group.group_id


def test_kick_rotates_sender_keys():
    async def run():
        router = _relay()
        alice, bob, carol, group_id = await _team(router)
        old_signing_key = (await alice.store.load(group_id, alice.public_key)).signing_public_key
        carol_copy = await carol.store.load(group_id, alice.public_key)

        await alice.messenger.remove_member(group_id, carol.public_key)
        await pump(alice, bob, carol)

        assert await carol.messenger.groups.get_group(group_id) is None
        assert not [k for k in carol.store.states if k[0] == group_id]
        assert await bob.store.load(group_id, carol.public_key) is None
        assert await alice.store.load(group_id, carol.public_key) is None
        assert (await bob.messenger.groups.get_group(group_id)).members == [alice.public_key, bob.public_key]

        new_state = await alice.store.load(group_id, alice.public_key)
        assert new_state.signing_public_key != old_signing_key
        assert (await bob.store.load(group_id, alice.public_key)).signing_public_key == \
            new_state.signing_public_key

        carol_before = len(carol.inbox.frames), carol.texts()
        result = await alice.messenger.send_group_message(group_id, "after carol")
        await bob.messenger.send_group_message(group_id, "bob after carol")
        await pump(alice, bob, carol)
        assert bob.texts()[-1] == "after carol"
        assert alice.texts()[-1] == "bob after carol"
        assert carol.texts() == carol_before[1]

        # the chain carol kept cannot read the rotated one
        stale = SenderKeyRatchet(MemorySenderKeyStore())
        await stale.store.persist(carol_copy)
        try:
            await stale.decrypt_as_receiver(group_id, alice.public_key, result.counter,
                                            result.ciphertext, result.signature)
            assert False, "Kicked member decrypted a rotated message"
        except InvalidSignature:
            pass
        assert not any(p.failures for p in (alice, bob, carol))
    asyncio.run(run())


def test_kick_without_rekey():
    async def run():
        router = _relay()
        alice, bob, carol, group_id = await _team(router, ClientSettings(rekey_on_membership_change=False))
        signing_key = (await alice.store.load(group_id, alice.public_key)).signing_public_key

        await alice.messenger.remove_member(group_id, carol.public_key)
        await pump(alice, bob, carol)

        assert (await alice.store.load(group_id, alice.public_key)).signing_public_key == signing_key
        assert await bob.store.load(group_id, carol.public_key) is None
    asyncio.run(run())


def test_only_creator_changes_roster():
    async def run():
        router = _relay()
        alice, bob, carol, group_id = await _team(router)
        for call in (bob.messenger.remove_member(group_id, carol.public_key),
                     bob.messenger.add_members(group_id, [generate_identity().public_key_b64]),
                     bob.messenger.rename_group(group_id, "Bob's")):
            try:
                await call
                assert False, "Should have raised GroupPermissionError"
            except GroupPermissionError:
                pass

        try:
            await alice.messenger.send_group_message("no-such-group", "hi")
            assert False, "Should have raised UnknownGroup"
        except UnknownGroup:
            pass
    asyncio.run(run())


def test_leave_group():
    async def run():
        router = _relay()
        alice, bob, carol, group_id = await _team(router)
        bob_key = (await bob.store.load(group_id, bob.public_key)).signing_public_key

        await carol.messenger.leave_group(group_id)
        await pump(alice, bob, carol)

        assert await carol.messenger.groups.get_group(group_id) is None
        assert not [k for k in carol.store.states if k[0] == group_id]
        for peer in (alice, bob):
            group = await peer.messenger.groups.get_group(group_id)
            assert carol.public_key not in group.members
            assert await peer.store.load(group_id, carol.public_key) is None
        assert (await alice.store.load(group_id, bob.public_key)).signing_public_key != bob_key

        await bob.messenger.send_group_message(group_id, "without carol")
        await pump(alice, bob, carol)
        assert alice.texts()[-1] == "without carol"
        assert "without carol" not in carol.texts()
        assert not any(p.failures for p in (alice, bob, carol))
    asyncio.run(run())


def test_member_cannot_leave_on_behalf_of_another():
    async def run():
        router = _relay()
        alice, bob, carol, group_id = await _team(router)
        forged = GroupEvent(type="leave", group_id=group_id, version=5, target=carol.public_key)
        assert await apply_group_event(alice.messenger.groups, alice.public_key, bob.public_key, forged) is None
        assert carol.public_key in (await alice.messenger.groups.get_group(group_id)).members
    asyncio.run(run())


def test_forged_group_event_is_refused():
    """A non-member cannot add itself or kick anyone by sending events in the creator's name"""
    async def run():
        router = _relay()
        alice, bob, carol, group_id = await _team(router)
        mallory = Peer(router, "mallory")
        roster = [alice.public_key, bob.public_key, carol.public_key]
        add_me = GroupEvent(type="add", group_id=group_id, version=5, name="Team",
                            members=roster + [mallory.public_key], creator_public_key=alice.public_key)
        kick_carol = GroupEvent(type="kick", group_id=group_id, version=5, target=carol.public_key)

        # plain event with a spoofed sender
        await mallory.messenger.transport.send(
            GroupEventEnvelope(from_=alice.public_key, to=bob.public_key, event=add_me)
        )
        # tagged under mallory's own pairwise key with bob, but claiming to be alice
        mallory_key = derive_session_key(mallory.identity.get_identity_secret_key(),
                                         b64decode(bob.public_key))
        for event in (add_me, kick_carol):
            await mallory.messenger.transport.send(
                seal_event(mallory_key, alice.public_key, bob.public_key, event)
            )
        await pump(alice, bob, carol)

        assert len(bob.failures) == 3
        assert all(isinstance(e, AuthenticationFailure) for e in bob.failures)
        group = await bob.messenger.groups.get_group(group_id)
        assert group.members == roster
        assert group.version == 1
        assert await bob.store.load(group_id, carol.public_key) is not None

        await bob.messenger.send_group_message(group_id, "secret for team only")
        await pump(alice, bob, carol)
        assert mallory.inbox.frames == []
        assert carol.texts()[-1] == "secret for team only"
    asyncio.run(run())


def test_event_tag_binds_sender_recipient_and_content():
    alice, bob, carol = generate_identity(), generate_identity(), generate_identity()
    key = derive_session_key(alice.secret_key, bob.public_key)
    event = GroupEvent(type="rename", group_id="g", version=2, name="Team")
    envelope = seal_event(key, alice.public_key_b64, bob.public_key_b64, event)

    bob_key = derive_session_key(bob.secret_key, alice.public_key)
    assert open_event(bob_key, bob.public_key_b64, envelope) == event
    # survives the trip through the relay as text
    assert open_event(bob_key, bob.public_key_b64, parse_envelope(encode_envelope(envelope))) == event

    altered = envelope.model_copy(update={
        "event": GroupEvent(type="rename", group_id="g", version=3, name="Team")
    })
    carol_key = derive_session_key(carol.secret_key, alice.public_key)
    for session_key, me, candidate in (
        (bob_key, bob.public_key_b64, altered),
        (carol_key, carol.public_key_b64, envelope.model_copy(update={"to": carol.public_key_b64})),
        (bob_key, bob.public_key_b64, envelope.model_copy(update={"mac": None})),
    ):
        try:
            open_event(session_key, me, candidate)
            assert False, "Should have raised AuthenticationFailure"
        except AuthenticationFailure:
            pass


def test_replayed_bundle_after_rekey_is_ignored():
    """The relay replays Alice's first bundle after a kick; Bob's rotated chain is untouched"""
    async def run():
        router = _relay()
        alice, bob, carol = (Peer(router, n) for n in ("alice", "bob", "carol"))
        group = await alice.messenger.create_group("Team", [bob.public_key, carol.public_key])
        captured = [f for f in bob.inbox.frames if parse_envelope(f).type == "sender-key"]
        assert len(captured) == 1
        await pump(alice, bob, carol)

        await alice.messenger.remove_member(group.group_id, carol.public_key)
        await pump(alice, bob, carol)
        for _ in range(3):
            await alice.messenger.send_group_message(group.group_id, "after the kick")
        await pump(alice, bob, carol)
        before = await bob.store.load(group.group_id, alice.public_key)
        assert before.message_index == 3

        bob.inbox.frames.append(captured[0])
        await pump(alice, bob, carol)
        assert await bob.store.load(group.group_id, alice.public_key) == before

        await alice.messenger.send_group_message(group.group_id, "still readable")
        await pump(alice, bob, carol)
        assert bob.texts()[-1] == "still readable"
        assert not bob.failures
    asyncio.run(run())


def test_add_member_reads_only_new_messages():
    async def run():
        router = _relay()
        alice, bob = Peer(router, "alice"), Peer(router, "bob")
        group = await alice.messenger.create_group("Team", [bob.public_key])
        await pump(alice, bob)
        early = await alice.messenger.send_group_message(group.group_id, "before dave")
        await alice.messenger.send_group_message(group.group_id, "still before dave")
        await bob.messenger.send_group_message(group.group_id, "bob before dave")
        await pump(alice, bob)

        dave = Peer(router, "dave")
        await alice.messenger.add_members(group.group_id, [dave.public_key])
        await pump(alice, bob, dave)

        copy = await dave.messenger.groups.get_group(group.group_id)
        assert copy.members == [alice.public_key, bob.public_key, dave.public_key]
        assert (await dave.store.load(group.group_id, alice.public_key)).message_index == 2
        assert await dave.store.load(group.group_id, bob.public_key) is not None

        await alice.messenger.send_group_message(group.group_id, "welcome dave")
        await bob.messenger.send_group_message(group.group_id, "hey dave")
        await pump(alice, bob, dave)
        assert dave.texts() == ["welcome dave", "hey dave"]
        assert dave.received[0].counter == 2

        try:
            await dave.messenger.ratchet.decrypt_as_receiver(
                group.group_id, alice.public_key, early.counter, early.ciphertext, early.signature
            )
            assert False, "New member read history"
        except StaleOrDuplicateIndex:
            pass
        assert not any(p.failures for p in (alice, bob, dave))
    asyncio.run(run())


def test_bundle_and_message_from_non_member_rejected():
    async def run():
        router = _relay()
        alice, bob, carol, group_id = await _team(router)
        mallory = Peer(router, "mallory")

        await mallory.messenger.distribute_sender_key(group_id, [bob.public_key])
        await pump(alice, bob, carol, mallory)
        assert len(bob.failures) == 1
        assert isinstance(bob.failures[0], UnknownSender)
        assert await bob.store.load(group_id, mallory.public_key) is None

        envelope = MessageEnvelope(
            from_=mallory.public_key, to=bob.public_key, ciphertext=b64encode(b"x" * 64),
            timestamp="2024-01-01T00:00:00Z", group_id=group_id, counter=0,
            signature=b64encode(bytes(64))
        )
        try:
            await bob.messenger.handle_envelope(envelope)
            assert False, "Should have raised UnknownSender"
        except UnknownSender:
            pass
    asyncio.run(run())


def test_group_message_without_counter_is_malformed():
    async def run():
        router = _relay()
        alice, bob, carol, group_id = await _team(router)
        envelope = MessageEnvelope(
            from_=alice.public_key, to=bob.public_key, ciphertext=b64encode(b"x" * 64),
            timestamp="2024-01-01T00:00:00Z", group_id=group_id
        )
        try:
            await bob.messenger.handle_envelope(envelope)
            assert False, "Should have raised MalformedEnvelope"
        except MalformedEnvelope:
            pass
    asyncio.run(run())


def test_serve_reports_failures_and_continues():
    async def run():
        router = _relay()
        alice, bob = Peer(router, "alice"), Peer(router, "bob")
        await alice.messenger.send_direct(bob.public_key, "first")
        good = bob.inbox.frames.pop()
        bad = MessageEnvelope(from_=alice.public_key, to=bob.public_key,
                              ciphertext=b64encode(b"garbage" * 8), nonce=b64encode(bytes(24)),
                              timestamp="2024-01-01T00:00:00Z")

        class FakeConnection:
            async def frames(self):
                yield bad
                yield parse_envelope(good)

        messages, failures = [], []

        async def on_message(message):
            messages.append(message)

        async def on_failure(failure):
            failures.append(failure)

        await bob.messenger.serve(FakeConnection(), on_message, on_failure)
        assert [m.text for m in messages] == ["first"]
        assert len(failures) == 1
        assert failures[0].envelope_type == "message"
        assert failures[0].sender == alice.public_key
    asyncio.run(run())


def test_group_event_rules():
    async def run():
        alice, bob, carol = (generate_identity().public_key_b64 for _ in range(3))
        directory = MemoryGroupDirectory()

        create = GroupEvent(type="create", group_id="g", version=1, name="Team",
                            members=[alice, bob, carol], creator_public_key=alice)
        # only the creator can announce the group
        assert await apply_group_event(directory, bob, carol, create) is None
        assert await directory.get_group("g") is None

        change = await apply_group_event(directory, bob, alice, create)
        assert change.added == [alice, carol]
        assert (await directory.get_group_members("g")) == [alice, bob, carol]

        # not addressed to us
        other = GroupEvent(type="create", group_id="h", version=1, members=[alice, carol],
                           creator_public_key=alice)
        assert await apply_group_event(directory, bob, alice, other) is None

        kick = GroupEvent(type="kick", group_id="g", version=2, target=carol)
        assert await apply_group_event(directory, bob, carol, kick) is None
        rename = GroupEvent(type="rename", group_id="g", version=2, name="Renamed")
        assert await apply_group_event(directory, bob, carol, rename) is None

        assert (await apply_group_event(directory, bob, alice, rename)).group.name == "Renamed"
        stale = GroupEvent(type="rename", group_id="g", version=1, name="Old")
        assert await apply_group_event(directory, bob, alice, stale) is None

        change = await apply_group_event(directory, bob, carol,
                                         GroupEvent(type="leave", group_id="g", version=3, target=carol))
        assert change.removed == [carol]
        assert (await directory.get_group("g")).members == [alice, bob]

        change = await apply_group_event(directory, bob, alice,
                                         GroupEvent(type="kick", group_id="g", version=4, target=bob))
        assert change.left_group
        assert await directory.list_groups() == []
    asyncio.run(run())


def test_database_stores(tmp_path):
    async def run():
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")
        await database.create_tables()
        try:
            alice_keys = DatabaseSenderKeyStore(database, "alice")
            ratchet = SenderKeyRatchet(alice_keys)
            bundle = await ratchet.ensure_self_state("g", "alice-pk")
            await ratchet.encrypt_as_sender("g", "alice-pk", b"one")

            state = await alice_keys.load("g", "alice-pk")
            assert state.message_index == 1
            assert state.signing_secret_key is not None
            assert state.signing_public_key == bundle.signing_public_key
            assert await DatabaseSenderKeyStore(database, "bob").load("g", "alice-pk") is None

            bob_keys = DatabaseSenderKeyStore(database, "bob")
            assert await SenderKeyRatchet(bob_keys).apply_bundle(bundle)
            await alice_keys.purge_group("g")
            assert await alice_keys.load("g", "alice-pk") is None
            assert await bob_keys.load("g", "alice-pk") is not None

            groups = DatabaseGroupDirectory(database, "alice")
            group = Group(group_id="g", name="Team", members=["alice-pk", "bob-pk"],
                          creator_public_key="alice-pk", version=1)
            await groups.save_group(group)
            group.members.append("carol-pk")
            group.version = 2
            await groups.save_group(group)

            loaded = await groups.get_group("g")
            assert loaded == group
            assert await DatabaseGroupDirectory(database, "bob").list_groups() == []
            await groups.delete_group("g")
            assert await groups.get_group("g") is None
        finally:
            await database.close()
    asyncio.run(run())


def test_messenger_over_database(tmp_path):
    async def run():
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")
        await database.create_tables()
        try:
            router = _relay()
            alice = Peer(router, "alice")
            bob = Peer(router, "bob",
                       sender_keys=DatabaseSenderKeyStore(database, "bob"),
                       groups=DatabaseGroupDirectory(database, "bob"))
            group = await alice.messenger.create_group("Team", [bob.public_key])
            await alice.messenger.send_group_message(group.group_id, "persisted")
            await pump(alice, bob)
            assert bob.texts() == ["persisted"]
            assert (await database.load_sender_key("bob", group.group_id, alice.public_key)).message_index == 1
        finally:
            await database.close()
    asyncio.run(run())


def test_open_messenger_uses_settings(tmp_path, monkeypatch):
    connected, closed = [], []

    async def fake_connect(self):
        self.websocket = object()
        connected.append(self.url)

    async def fake_close(self):
        self.websocket = None
        closed.append(self.url)

    monkeypatch.setattr(RelayConnection, "connect", fake_connect)
    monkeypatch.setattr(RelayConnection, "close", fake_close)

    data_dir = tmp_path / "data"
    database_url = f"sqlite+aiosqlite:///{data_dir / 'chat.db'}"
    settings = ClientSettings(relay_url="ws://relay.test/ws", data_dir=str(data_dir),
                              database_url=database_url)

    identity = open_vault(settings).create("alice", "passphrase")
    assert (data_dir / f"{identity.identity_id}.identity.json").exists()

    async def run():
        async with open_messenger(identity, settings) as messenger:
            assert messenger.transport.url == "ws://relay.test/ws"
            assert messenger.transport.public_key == identity.public_key
            assert messenger.settings is settings
            group = await messenger.create_group("Solo", [])
        assert connected == closed == ["ws://relay.test/ws"]

        database = Database(database_url)
        try:
            assert [g.name for g in await database.list_groups(identity.identity_id)] == ["Solo"]
            assert await database.load_sender_key(identity.identity_id, group.group_id,
                                                  identity.public_key) is not None
        finally:
            await database.close()
    asyncio.run(run())


def test_identity_vault(tmp_path):
    vault = IdentityVault(str(tmp_path))
    created = vault.create("alice", "correct horse")

    unlocked = vault.unlock(created.identity_id, "correct horse")
    assert unlocked.public_key == created.public_key
    assert unlocked.get_identity_secret_key() == created.get_identity_secret_key()
    assert unlocked.codename == "alice"

    with open(tmp_path / f"{created.identity_id}.identity.json") as f:
        assert b64encode(created.get_identity_secret_key()) not in f.read()

    for identity_id, passphrase in ((created.identity_id, "wrong"), ("missing", "correct horse")):
        try:
            vault.unlock(identity_id, passphrase)
            assert False, "Should have raised VaultLocked"
        except VaultLocked:
            pass

    assert [i['public_key'] for i in vault.list_identities()] == [created.public_key]
    assert vault.delete(created.identity_id)
    assert vault.list_identities() == []


def test_contacts():
    me, bob = generate_identity(), generate_identity()
    book = ContactBook(SessionKeyCache(lambda: me.secret_key))

    contact = book.add_contact("bob", bob.public_key_b64)
    again = book.add_contact("bobby", bob.public_key_b64)
    assert again is contact
    assert len(book.list()) == 1
    assert book.display_name(bob.public_key_b64) == "bobby"
    assert contact.safety_code == contact.safety_code.upper()

    stranger = generate_identity().public_key_b64
    assert book.display_name(stranger).startswith("stranger:")

    try:
        book.add_contact("broken", b64encode(b"\x01" * 31))
        assert False, "Should have raised InvalidKey"
    except InvalidKey:
        pass

    assert book.remove_contact(bob.public_key_b64)
    assert book.get(bob.public_key_b64) is None


def test_client_settings_from_env(monkeypatch):
    monkeypatch.setenv("CHAT_RELAY_URL", "ws://relay.example:4000/ws")
    monkeypatch.setenv("CHAT_GROUP_WIRE_FORMAT", "group-message")
    monkeypatch.setenv("CHAT_REKEY_ON_MEMBERSHIP_CHANGE", "false")
    settings = ClientSettings.from_env()
    assert settings.relay_url == "ws://relay.example:4000/ws"
    assert settings.group_wire_format == "group-message"
    assert settings.rekey_on_membership_change is False
    assert settings.data_dir == "client_data"


def test_relay_connection_unavailable():
    async def run():
        connection = RelayConnection("ws://127.0.0.1:1/ws", "alice")
        try:
            await connection.send(MessageEnvelope(from_="alice", to="bob", ciphertext="eA",
                                                  nonce="eA", timestamp="t"))
            assert False, "Should have raised TransportUnavailable"
        except TransportUnavailable:
            pass

        try:
            await connection.connect()
            assert False, "Should have raised TransportUnavailable"
        except TransportUnavailable:
            pass
        assert not connection.is_open
    asyncio.run(run())
