"""Frame decoding and event parsing for the upstream crash feed.

The upstream transport sometimes batches several JSON documents into one
websocket message without a delimiter, and sends a bare ``{}`` as its
application-level ping. ``decode_frame`` turns one raw message into envelopes;
``parse_events`` maps one envelope onto the closed event union.
"""
import json
import math
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .models import Event, Settled, StatusUpdate, Unrecognized, WagerPlaced

KEEPALIVE_PONG = {"type": 3}

UPDATE_TYPES = ("update",)
WAGER_TYPES = ("betCreated", "bet")
SETTLEMENT_TYPES = ("crash", "end")


class DecodedFrame(BaseModel):
    keepalive: bool = False
    envelopes: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def malformed(self) -> bool:
        return not self.keepalive and not self.envelopes


def _as_text(raw: Union[str, bytes, bytearray]) -> str:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("utf-8", errors="replace")
    return raw


def _split_documents(text: str) -> List[str]:
    """Return the top-level ``{...}`` substrings of ``text`` in order."""
    docs: List[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            if depth > 0:
                in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                docs.append(text[start:i + 1])
    return docs


def decode_frame(raw: Union[str, bytes, bytearray]) -> DecodedFrame:
    text = _as_text(raw)
    try:
        value = json.loads(text)
    except ValueError:
        value = None
    else:
        if isinstance(value, dict):
            if not value:
                return DecodedFrame(keepalive=True)
            return DecodedFrame(envelopes=[value])
        if isinstance(value, list):
            return DecodedFrame(envelopes=[v for v in value if isinstance(v, dict) and v])
        return DecodedFrame()

    keepalive = False
    envelopes: List[Dict[str, Any]] = []
    for doc in _split_documents(text):
        try:
            parsed = json.loads(doc)
        except ValueError:
            continue
        if not isinstance(parsed, dict):
            continue
        if parsed:
            envelopes.append(parsed)
        else:
            keepalive = True
    return DecodedFrame(keepalive=keepalive, envelopes=envelopes)


########################################################
# Envelope -> events
########################################################

def push_data(envelope: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    push = envelope.get("push")
    if not isinstance(push, dict):
        return None
    pub = push.get("pub")
    if not isinstance(pub, dict):
        return None
    data = pub.get("data")
    return data if isinstance(data, dict) else None


def _opt_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _opt_number(value: Any) -> Optional[float]:
    """Finite float from a JSON number or numeric string, else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        number = float(value)
    except (OverflowError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _opt_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _is_wager(node: Any) -> bool:
    return isinstance(node, dict) and bool(node.get("user")) and bool(node.get("deposit"))


def _wager_nodes(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    nodes: List[Dict[str, Any]] = []
    bet = data.get("bet")
    if _is_wager(bet):
        nodes.append(bet)
    payload = data.get("payload")
    if isinstance(payload, dict) and _is_wager(payload.get("bet")):
        nodes.append(payload["bet"])
    if isinstance(data.get("bets"), list):
        nodes.extend(b for b in data["bets"] if _is_wager(b))
    state = data.get("state")
    if isinstance(state, dict) and isinstance(state.get("bets"), list):
        nodes.extend(b for b in state["bets"] if _is_wager(b))
    if not nodes and _is_wager(data):
        nodes.append(data)
    return nodes


def _to_wager(node: Dict[str, Any], data: Dict[str, Any]) -> WagerPlaced:
    user = node.get("user") if isinstance(node.get("user"), dict) else {}
    deposit = node.get("deposit")
    amount = deposit.get("amount") if isinstance(deposit, dict) else deposit
    return WagerPlaced(
        participant_id=_opt_str(user.get("id")),
        display_name=_opt_str(user.get("name")),
        amount=amount,
        auto_hint=node.get("coefficientAuto"),
        round_id=_opt_str(node.get("gameId") or data.get("gameId")),
        wager_status=_opt_int(node.get("status")),
    )


def parse_events(envelope: Dict[str, Any]) -> List[Event]:
    """Map one envelope onto zero or more events.

    Non-push envelopes (connect/subscribe acknowledgements) yield nothing.
    A wager event may carry several wagers (``bets`` arrays).
    """
    data = push_data(envelope)
    if data is None:
        return []
    event_type = data.get("type")
    if event_type in UPDATE_TYPES:
        return [StatusUpdate(
            round_id=_opt_str(data.get("id")),
            status_code=_opt_int(data.get("status")),
            delta=_opt_number(data.get("delta")),
        )]
    if event_type in WAGER_TYPES:
        return [_to_wager(node, data) for node in _wager_nodes(data)]
    if event_type in SETTLEMENT_TYPES:
        return [Settled(
            round_id=_opt_str(data.get("id") or data.get("gameId")),
            value=_opt_number(data.get("crash")),
        )]
    return [Unrecognized(event_type=_opt_str(event_type))]
