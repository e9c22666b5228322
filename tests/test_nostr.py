"""
Tests for nostr events, encrypted messages, pool messages and relay dispatch.
"""

import json
from typing import Any

import pytest

from joinstr.nostr.event import (
    Event,
    NostrError,
    NostrKeys,
    build_event,
    matches_filter,
    nip04_decrypt,
    nip04_encrypt,
)
from joinstr.nostr.messages import (
    Credentials,
    JoinPool,
    MessageError,
    OutputRegistration,
    SignedInput,
    decode_message,
    encode_message,
)
from joinstr.nostr.relay import RelayClient, RelayError
from joinstr.wallet.transaction import TxIn


class TestKeys:
    def test_public_key_is_x_only(self):
        keys = NostrKeys()
        assert len(keys.public_key_hex) == 64
        assert NostrKeys.from_hex(keys.secret_hex).public_key_hex == keys.public_key_hex

    def test_invalid_secret(self):
        with pytest.raises(NostrError):
            NostrKeys.from_hex("00" * 32)
        with pytest.raises(NostrError):
            NostrKeys.from_hex("not hex")

    def test_shared_secret_is_symmetric(self):
        alice, bob = NostrKeys(), NostrKeys()
        assert alice.shared_secret(bob.public_key_hex) == bob.shared_secret(alice.public_key_hex)


class TestEvent:
    def test_build_and_verify(self):
        keys = NostrKeys()
        event = build_event(keys, 2022, "{}", tags=[["p", "ab"]], created_at=1_700_000_000)
        assert event.pubkey == keys.public_key_hex
        assert event.id == event.compute_id()
        assert event.verify()

    def test_tampered_content_fails(self):
        event = build_event(NostrKeys(), 1, "hello")
        event.content = "bye"
        assert not event.verify()

    def test_foreign_signature_fails(self):
        event = build_event(NostrKeys(), 1, "hello")
        other = build_event(NostrKeys(), 1, "hello", created_at=event.created_at)
        event.sig = other.sig
        assert not event.verify()

    def test_id_serialization(self):
        event = Event(pubkey="ab", created_at=1, kind=4, tags=[["p", "cd"]], content="é")
        assert event.serialize_for_id() == '[0,"ab",1,4,[["p","cd"]],"é"]'.encode()

    def test_dict_roundtrip(self):
        event = build_event(NostrKeys(), 4, "x", tags=[["p", "cd"]])
        assert Event.from_dict(json.loads(json.dumps(event.to_dict()))) == event

    @pytest.mark.parametrize(
        "mutation",
        [
            {"kind": "4"},
            {"tags": [["p", 1]]},
            {"content": None},
        ],
    )
    def test_from_dict_rejects_wrong_types(self, mutation):
        data = build_event(NostrKeys(), 4, "x").to_dict()
        data.update(mutation)
        with pytest.raises(NostrError):
            Event.from_dict(data)

    def test_from_dict_rejects_missing_field(self):
        data = build_event(NostrKeys(), 4, "x").to_dict()
        del data["sig"]
        with pytest.raises(NostrError):
            Event.from_dict(data)


class TestFilter:
    def test_matches(self):
        event = build_event(NostrKeys(), 4, "x", tags=[["p", "cd"]], created_at=100)
        assert matches_filter(event, {"kinds": [4], "#p": ["cd"], "since": 100})
        assert matches_filter(event, {"authors": [event.pubkey], "until": 100})
        assert not matches_filter(event, {"kinds": [2022]})
        assert not matches_filter(event, {"#p": ["ef"]})
        assert not matches_filter(event, {"since": 101})
        assert not matches_filter(event, {"ids": ["00"]})


class TestNip04:
    def test_roundtrip(self):
        alice, bob = NostrKeys(), NostrKeys()
        content = nip04_encrypt(alice, bob.public_key_hex, "secret message ✓")
        assert "?iv=" in content
        assert nip04_decrypt(bob, alice.public_key_hex, content) == "secret message ✓"

    def test_message_to_self(self):
        keys = NostrKeys()
        content = nip04_encrypt(keys, keys.public_key_hex, "pool broadcast")
        assert nip04_decrypt(keys, keys.public_key_hex, content) == "pool broadcast"

    def test_fresh_iv_per_message(self):
        alice, bob = NostrKeys(), NostrKeys()
        first = nip04_encrypt(alice, bob.public_key_hex, "same")
        second = nip04_encrypt(alice, bob.public_key_hex, "same")
        assert first != second

    def test_public_key_validity(self):
        assert NostrKeys.is_valid_public_key(NostrKeys().public_key_hex)
        assert not NostrKeys.is_valid_public_key("ff" * 32)
        assert not NostrKeys.is_valid_public_key("not-a-key")

    @pytest.mark.parametrize("content", ["no separator", "AAAA?iv=AAAA", "!!!?iv=!!!"])
    def test_malformed_content(self, content):
        with pytest.raises(NostrError):
            nip04_decrypt(NostrKeys(), NostrKeys().public_key_hex, content)


class TestPoolMessages:
    def test_join_pool(self):
        raw = encode_message(JoinPool(npub="ab" * 32))
        assert json.loads(raw) == {"version": "1", "type": "join_pool", "npub": "ab" * 32}
        assert decode_message(raw) == JoinPool(npub="ab" * 32)

    def test_credentials(self):
        raw = encode_message(Credentials(pool_id="pool1", key="cd" * 32))
        assert json.loads(raw)["credentials"] == {"id": "pool1", "key": "cd" * 32}
        assert decode_message(raw) == Credentials(pool_id="pool1", key="cd" * 32)

    def test_output(self):
        assert decode_message(encode_message(OutputRegistration("bcrt1qxyz"))) == (
            OutputRegistration("bcrt1qxyz")
        )

    def test_signed_input(self):
        txin = TxIn(txid="ab" * 32, vout=2, witness=[b"\x30" * 71 + b"\x81", b"\x02" * 33])
        decoded = decode_message(encode_message(SignedInput(txin=txin, amount=120_000)))
        assert isinstance(decoded, SignedInput)
        assert decoded.amount == 120_000
        assert decoded.txin.outpoint == txin.outpoint
        assert decoded.txin.witness == txin.witness
        assert decoded.txin.sequence == 0xFFFFFFFF

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[]",
            '{"type": "join_pool"}',
            '{"version": "2", "type": "join_pool"}',
            '{"version": "1", "type": "join_pool", "npub": "not-a-key"}',
            '{"version": "1", "type": "join_pool", "npub": 7}',
            '{"version": "1", "type": "join_pool", "npub": "' + "AB" * 32 + '"}',
            '{"version": "1", "type": "shuffle"}',
            '{"version": "1", "type": "output"}',
            '{"version": "1", "type": "credentials", "credentials": {"id": 1}}',
            '{"version": "1", "type": "input", "input": {"txin": "zz", "witness": "", "amount": 1}}',  # noqa: E501
            '{"version": "1", "type": "input", "input": {"txin": "00", "witness": "00"}}',
        ],
    )
    def test_rejects_malformed(self, raw):
        with pytest.raises(MessageError):
            decode_message(raw)

    def test_rejects_trailing_txin_bytes(self):
        txin = TxIn(txid="ab" * 32, vout=0)
        raw = json.dumps(
            {
                "version": "1",
                "type": "input",
                "input": {"txin": txin.serialize().hex() + "00", "witness": "00", "amount": 1},
            }
        )
        with pytest.raises(MessageError):
            decode_message(raw)


class SilentRelay(RelayClient):
    """Relay that swallows frames; tests feed replies with handle_message."""

    def __init__(self) -> None:
        super().__init__("wss://silent.test", ack_timeout=0.1)
        self.sent: list[list[Any]] = []

    async def connect(self) -> None:
        pass

    async def _send(self, frame: list[Any]) -> None:
        self._check()
        self.sent.append(frame)


class TestRelayClient:
    @pytest.mark.asyncio
    async def test_publish_and_replay(self, hub):
        writer, reader = hub.relay(), hub.relay()
        await writer.connect()
        await reader.connect()
        keys = NostrKeys()

        old = build_event(keys, 2022, "old")
        await writer.publish(old)
        sub = await reader.subscribe([{"kinds": [2022]}])
        new = build_event(keys, 2022, "new")
        await writer.publish(new)
        await writer.publish(build_event(keys, 1, "ignored"))

        assert (await sub.next(timeout=1)).content == "old"
        assert (await sub.next(timeout=1)).content == "new"
        assert await sub.next(timeout=0.05) is None
        assert sub.eose.is_set()

    @pytest.mark.asyncio
    async def test_rejected_event(self, hub):
        relay = hub.relay()
        await relay.connect()
        hub.reject = True
        with pytest.raises(RelayError, match="rejected"):
            await relay.publish(build_event(NostrKeys(), 1, "x"))

    @pytest.mark.asyncio
    async def test_ack_timeout(self):
        relay = SilentRelay()
        with pytest.raises(RelayError, match="acknowledgement"):
            await relay.publish(build_event(NostrKeys(), 1, "x"))

    @pytest.mark.asyncio
    async def test_invalid_events_dropped(self):
        relay = SilentRelay()
        sub = await relay.subscribe([{"kinds": [1]}])

        forged = build_event(NostrKeys(), 1, "x")
        forged.content = "y"
        relay.handle_message(json.dumps(["EVENT", sub.id, forged.to_dict()]))
        relay.handle_message(json.dumps(["EVENT", sub.id, {"id": "broken"}]))
        other_kind = build_event(NostrKeys(), 2, "z")
        relay.handle_message(json.dumps(["EVENT", sub.id, other_kind.to_dict()]))
        good = build_event(NostrKeys(), 1, "ok")
        relay.handle_message(json.dumps(["EVENT", sub.id, good.to_dict()]))

        assert await sub.next(timeout=0.1) == good
        assert await sub.next(timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_closed_subscription(self):
        relay = SilentRelay()
        sub = await relay.subscribe([{"kinds": [1]}])
        relay.handle_message(json.dumps(["CLOSED", sub.id, "auth-required: no"]))
        with pytest.raises(RelayError):
            await sub.next(timeout=0.1)
        # stays failed
        with pytest.raises(RelayError):
            await sub.next(timeout=0.1)
        assert sub.closed_reason == "auth-required: no"

    @pytest.mark.asyncio
    async def test_malformed_frame_fails_relay(self):
        relay = SilentRelay()
        sub = await relay.subscribe([{"kinds": [1]}])
        relay.handle_message("{not json")
        with pytest.raises(RelayError):
            await sub.next(timeout=0.1)
        with pytest.raises(RelayError):
            await relay.publish(build_event(NostrKeys(), 1, "x"))

    @pytest.mark.asyncio
    async def test_unsubscribe_sends_close(self):
        relay = SilentRelay()
        sub = await relay.subscribe([{"kinds": [1]}])
        await relay.unsubscribe(sub)
        assert relay.sent[-1] == ["CLOSE", sub.id]
        assert relay.sent[0] == ["REQ", sub.id, {"kinds": [1]}]
