"""
tests.test_protocol
~~~~~~~~~~~~~~~~~~~

流式协议编解码测试。
"""
from __future__ import annotations

import json

import pytest

from copimon.core.exceptions import ProtocolError
from copimon.schemas.items import Item
from copimon.schemas.protocol import (
    NewItemMessage,
    SnapshotMessage,
    decode_client_message,
    decode_server_message,
    encode,
)


class TestClientMessages:
    """客户端 → 服务端。"""

    def test_valid_new_item(self) -> None:
        request = decode_client_message('{"type": "new_item", "text": "hi"}')

        assert request.text == "hi"

    def test_bytes_frame(self) -> None:
        assert decode_client_message(b'{"type": "new_item", "text": "b"}').text == "b"

    @pytest.mark.parametrize(
        "raw",
        [
            "not json at all",
            "[]",
            '{"text": "missing type"}',
            '{"type": "ping"}',
            '{"type": "new_item"}',
            '{"type": "new_item", "text": ""}',
            '{"type": "new_item", "text": 12}',
        ],
    )
    def test_malformed_raises_protocol_error(self, raw: str) -> None:
        with pytest.raises(ProtocolError):
            decode_client_message(raw)


class TestServerMessages:
    """服务端 → 客户端。"""

    def test_snapshot_uses_wire_field_names(self) -> None:
        item = Item(id="1", text="a", ts=1000)

        payload = json.loads(encode(SnapshotMessage(room_id="r", items=[item])))

        assert payload == {
            "type": "snapshot",
            "roomId": "r",
            "items": [{"id": "1", "text": "a", "ts": 1000}],
        }

    def test_decode_new_item(self) -> None:
        raw = encode(NewItemMessage(room_id="r", item=Item(id="9", text="z", ts=5)))

        message = decode_server_message(raw)

        assert isinstance(message, NewItemMessage)
        assert message.room_id == "r"
        assert message.item.text == "z"

    @pytest.mark.parametrize(
        "raw",
        ["{", '{"type": "snapshot"}', '{"type": "unknown", "roomId": "r"}'],
    )
    def test_malformed_raises_protocol_error(self, raw: str) -> None:
        with pytest.raises(ProtocolError):
            decode_server_message(raw)
