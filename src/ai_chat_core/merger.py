"""Pure merge of one stream chunk into one response session.

``merge_chunk`` never mutates its input: it returns a new session plus a
``UIDelta`` describing what changed. Callers decide what to do with the
result (store it, flush it, notify listeners).

Merge rules per chunk kind:

- partial_item, unseen id: the id is appended to ``order`` and the item
  starts from the delta (LOADING).
- partial_item, known id: a delta carrying ``text`` appends it to the
  accumulated text and shallow-merges its other fields; a delta without
  ``text`` (structured types) replaces the item content wholesale.
- complete_item: replaces the item wholesale and marks it COMPLETE. An
  unseen id is appended at the end of ``order``.
- final_response: replaces the whole item set and seals the session.
"""

from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Set

from pydantic import BaseModel, Field

from .exceptions import LateChunkError, MalformedChunkError
from .models.messages import (
    GenericItem,
    ItemDelta,
    MessageResponse,
    StreamChunk,
)
from .models.session import (
    ItemState,
    ItemUIState,
    LocalMessageItem,
    ResponseSession,
    ResponseState,
)

DEFAULT_SYNTHETIC_PREFIX = "item-"


class DeltaKind(str, Enum):
    """What a merge did to the session."""

    ITEM_ADDED = "item_added"
    ITEM_UPDATED = "item_updated"
    ITEM_COMPLETED = "item_completed"
    RESPONSE_REPLACED = "response_replaced"


class UIDelta(BaseModel):
    """Change descriptor returned by ``merge_chunk``."""

    kind: DeltaKind
    response_id: str
    item_id: Optional[str] = None
    item_ids: List[str] = Field(default_factory=list, description="Item order after the merge")
    sealed: bool = Field(False, description="Session reached COMPLETE with this chunk")
    implicit_append: bool = Field(
        False, description="A complete_item referenced an item never seen before"
    )


class MergeResult(NamedTuple):
    session: ResponseSession
    delta: UIDelta


def merge_chunk(
    session: ResponseSession,
    chunk: StreamChunk,
    synthetic_id_prefix: str = DEFAULT_SYNTHETIC_PREFIX,
) -> MergeResult:
    """
    Apply one chunk to one session.

    Args:
        session: Current session (left untouched)
        chunk: Validated chunk addressed to this session
        synthetic_id_prefix: Prefix for ids given to final items without one

    Returns:
        MergeResult with the new session and the change descriptor

    Raises:
        MalformedChunkError: If the chunk cannot be merged
        LateChunkError: If the session or the addressed item is already sealed
    """
    if session.state.is_sealed:
        raise LateChunkError(session.response_id, session.state.value)

    final_response = chunk.final_response
    complete_item = chunk.complete_item
    delta_item = chunk.partial_item

    if final_response is not None:
        return _merge_final(session, final_response, synthetic_id_prefix)

    if complete_item is None and delta_item is None:
        raise MalformedChunkError(
            "Chunk carries no partial_item, complete_item or final_response",
            detail=f"response_id={session.response_id}",
        )

    message_options = _merge_message_options(session.message_options, chunk)
    items = dict(session.items_by_id)
    order = list(session.order)
    cancellable = session.cancellable

    if complete_item is not None:
        item_id = _require_item_id(complete_item, session.response_id)
        existing = items.get(item_id)
        implicit_append = existing is None
        if implicit_append:
            order.append(item_id)

        chunk_count = existing.ui_state.chunk_count + 1 if existing else 1
        items[item_id] = LocalMessageItem(
            item=GenericItem.model_validate(complete_item.to_wire()),
            ui_state=ItemUIState(id=item_id, state=ItemState.COMPLETE, chunk_count=chunk_count),
        )
        delta_kind = DeltaKind.ITEM_COMPLETED
    elif delta_item is not None:
        item_id = _require_item_id(delta_item, session.response_id)
        existing = items.get(item_id)

        if existing is not None and existing.ui_state.state == ItemState.COMPLETE:
            raise LateChunkError(session.response_id, ItemState.COMPLETE.value, item_id)

        if existing is None:
            if not delta_item.response_type:
                raise MalformedChunkError(
                    f"First chunk for item {item_id} has no response_type",
                    detail=f"response_id={session.response_id}",
                )
            new_item = GenericItem.model_validate(delta_item.to_wire())
            items[item_id] = LocalMessageItem(
                item=new_item,
                ui_state=ItemUIState(id=item_id, state=ItemState.LOADING, chunk_count=1),
            )
            order.append(item_id)
            delta_kind = DeltaKind.ITEM_ADDED
        else:
            items[item_id] = LocalMessageItem(
                item=_apply_partial(existing.item, delta_item),
                ui_state=existing.ui_state.model_copy(
                    update={"chunk_count": existing.ui_state.chunk_count + 1}
                ),
            )
            delta_kind = DeltaKind.ITEM_UPDATED

        if delta_item.streaming_metadata and delta_item.streaming_metadata.cancellable:
            cancellable = True
        implicit_append = False

    new_session = session.model_copy(
        update={
            "items_by_id": items,
            "order": order,
            "state": ResponseState.STREAMING,
            "message_options": message_options,
            "cancellable": cancellable,
        }
    )

    sealed = False
    if (
        new_session.expected_items is not None
        and new_session.completed_count() >= new_session.expected_items
    ):
        new_session = new_session.model_copy(update={"state": ResponseState.COMPLETE})
        sealed = True

    return MergeResult(
        new_session,
        UIDelta(
            kind=delta_kind,
            response_id=session.response_id,
            item_id=item_id,
            item_ids=list(order),
            sealed=sealed,
            implicit_append=implicit_append,
        ),
    )


def build_response(
    session: ResponseSession,
    base: Optional[MessageResponse] = None,
    extra_items: Optional[List[GenericItem]] = None,
) -> MessageResponse:
    """
    Build the MessageResponse a session flushes into the store.

    Args:
        session: Session whose items, in order, form the output
        base: Final response whose other top-level fields are kept
        extra_items: Items appended after the accumulated ones (inline errors)
    """
    generic = [local.item.model_copy(deep=True) for local in session.local_items()]
    if extra_items:
        generic.extend(item.model_copy(deep=True) for item in extra_items)

    data: Dict[str, Any] = base.to_wire() if base is not None else {}
    data["id"] = session.response_id
    data["output"] = {**data.get("output", {}), "generic": [item.to_wire() for item in generic]}
    if session.request_id is not None:
        data["request_id"] = session.request_id
    if session.message_options is not None:
        data["message_options"] = session.message_options
    return MessageResponse.model_validate(data)


def _synthetic_id(prefix: str, index: int, taken: Set[str]) -> str:
    candidate = f"{prefix}{index}"
    suffix = 1
    while candidate in taken:
        candidate = f"{prefix}{index}-{suffix}"
        suffix += 1
    return candidate


def _merge_final(
    session: ResponseSession, final_response: MessageResponse, synthetic_id_prefix: str
) -> MergeResult:
    generic = final_response.output.generic
    explicit_ids = {item.item_id for item in generic if item.item_id}

    items: Dict[str, LocalMessageItem] = {}
    order: List[str] = []
    for index, item in enumerate(generic):
        item_id = item.item_id
        if not item_id or item_id in items:
            # Never reuse an id another item of this response carries.
            item_id = _synthetic_id(synthetic_id_prefix, index, explicit_ids | set(items))
        previous = session.items_by_id.get(item_id)
        items[item_id] = LocalMessageItem(
            item=item.model_copy(deep=True),
            ui_state=ItemUIState(
                id=item_id,
                state=ItemState.COMPLETE,
                chunk_count=(previous.ui_state.chunk_count if previous else 0) + 1,
            ),
        )
        order.append(item_id)

    message_options = session.message_options
    if final_response.message_options is not None:
        message_options = dict(final_response.message_options)

    new_session = session.model_copy(
        update={
            "items_by_id": items,
            "order": order,
            "state": ResponseState.COMPLETE,
            "message_options": message_options,
        }
    )
    return MergeResult(
        new_session,
        UIDelta(
            kind=DeltaKind.RESPONSE_REPLACED,
            response_id=session.response_id,
            item_ids=list(order),
            sealed=True,
        ),
    )


def _apply_partial(current: GenericItem, delta: ItemDelta) -> GenericItem:
    accumulated = current.to_wire()
    incoming = delta.to_wire()

    if delta.text is not None:
        incoming.pop("text")
        merged = {**accumulated, **incoming}
        merged["text"] = (accumulated.get("text") or "") + delta.text
    else:
        merged = incoming
        merged.setdefault("response_type", current.response_type)
        if "streaming_metadata" in accumulated:
            merged.setdefault("streaming_metadata", accumulated["streaming_metadata"])

    if not merged.get("response_type"):
        merged["response_type"] = current.response_type
    return GenericItem.model_validate(merged)


def _require_item_id(item: ItemDelta, response_id: str) -> str:
    item_id = item.item_id
    if not item_id:
        raise MalformedChunkError(
            "Item chunk has no streaming_metadata.id", detail=f"response_id={response_id}"
        )
    return item_id


def _merge_message_options(
    current: Optional[Dict[str, Any]], chunk: StreamChunk
) -> Optional[Dict[str, Any]]:
    partial_response = chunk.partial_response
    if partial_response is None:
        return current
    if partial_response.model_extra:
        raise MalformedChunkError(
            'partial_response only supports the "message_options" property',
            detail=", ".join(sorted(partial_response.model_extra)),
        )
    if partial_response.message_options is None:
        return current
    return {**(current or {}), **partial_response.message_options}
