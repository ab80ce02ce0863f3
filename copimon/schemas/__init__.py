"""
copimon.schemas
~~~~~~~~~~~~~~~
Pydantic schemas: REST bodies and the streaming wire protocol.
"""
from copimon.schemas.items import (
    ClipboardRequest,
    ClipboardResponse,
    ErrorResponse,
    HistoryResponse,
    Item,
    RoomInfo,
    RoomListResponse,
)
from copimon.schemas.protocol import (
    ErrorMessage,
    NewItemMessage,
    NewItemRequest,
    SnapshotMessage,
)
