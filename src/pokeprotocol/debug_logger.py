"""
Protocol trace for one peer.

Every datagram a peer sends or accepts, every ACK, retransmission, state
change and calculation mismatch is appended to an in-memory trace. With
verbose mode on, each entry is echoed as a ``LOG ::`` block so a battle can
be followed live from the terminal; ``--log-json`` dumps the whole trace
when the program exits.
"""

import json
import threading
import time
import traceback
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


Address = Tuple[str, int]


class EventType(Enum):
    """Kinds of trace entries."""
    MESSAGE_SENT = "MESSAGE_SENT"
    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    MESSAGE_ACK = "MESSAGE_ACK"
    RETRANSMISSION = "RETRANSMISSION"
    TIMEOUT = "TIMEOUT"
    STATE_CHANGE = "STATE_CHANGE"
    CONNECTION = "CONNECTION"
    DISCONNECTION = "DISCONNECTION"
    SPECTATOR_JOIN = "SPECTATOR_JOIN"
    BATTLE_EVENT = "BATTLE_EVENT"
    CHAT_MESSAGE = "CHAT_MESSAGE"
    DISCREPANCY = "DISCREPANCY"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class DebugEvent:
    """One trace entry."""
    timestamp: float
    event_type: str
    peer_type: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict:
        entry = {k: v for k, v in asdict(self).items() if v or k == "timestamp"}
        entry["timestamp_human"] = datetime.fromtimestamp(self.timestamp).isoformat()
        return entry


def _address_fields(prefix: str, address: Optional[Address]) -> Dict[str, Any]:
    if not address:
        return {}
    return {f"{prefix}address": address[0], f"{prefix}port": address[1]}


class DebugLogger:
    """
    Trace recorder shared by every component of one peer.

    The retransmission sweeper and the listener thread record entries while
    the turn flow is running, so appends happen under a lock.
    """

    def __init__(self, peer_type: str, peer_port: int = 0, verbose: bool = False,
                 output: Callable[[str], None] = print):
        """
        Args:
            peer_type: Role shown in every entry (Host, Joiner, Spectator)
            peer_port: Local UDP port, filled in once the socket is bound
            verbose: Echo entries as they are recorded
            output: Sink for echoed entries
        """
        self.peer_type = peer_type
        self.peer_port = peer_port
        self.verbose = verbose
        self.output = output
        self.started = time.time()
        self.events: List[DebugEvent] = []
        self._lock = threading.Lock()

    def log_event(self, event_type: EventType, message: str,
                  data: Optional[Dict] = None, error: Optional[Exception] = None):
        event = DebugEvent(time.time(), event_type.value, self.peer_type,
                           message, dict(data or {}))
        if error is not None:
            event.error = str(error)
            if error.__traceback__ is not None:
                event.stack_trace = "".join(traceback.format_exception(
                    type(error), error, error.__traceback__))

        with self._lock:
            self.events.append(event)

        if self.verbose:
            self.output(self._render(event))

    @staticmethod
    def _render(event: DebugEvent) -> str:
        lines = [f"LOG :: [{event.peer_type}] {event.message}"]
        lines.extend(f"\t> {key}: {value}" for key, value in event.data.items())
        if event.error:
            lines.append(f"\t> error: {event.error}")
        return "\n".join(lines)

    @staticmethod
    def _describe(message: Any) -> Dict[str, Any]:
        if not hasattr(message, "to_fields"):
            return {"message_type": str(message)}
        return {"message_type": message.message_type.value, **message.to_fields()}

    # Traffic

    def log_message_sent(self, message: Any, target: Optional[Address] = None):
        data = self._describe(message)
        data.update(_address_fields("target_", target))
        self.log_event(EventType.MESSAGE_SENT, f"Sent {data['message_type']}", data)

    def log_message_received(self, message: Any, source: Optional[Address] = None):
        data = self._describe(message)
        data.update(_address_fields("source_", source))
        self.log_event(EventType.MESSAGE_RECEIVED, f"Received {data['message_type']}", data)

    def log_ack(self, sequence_number: int, direction: str = "RECEIVED"):
        self.log_event(EventType.MESSAGE_ACK, f"ACK {direction} for {sequence_number}",
                       {"ack_number": sequence_number, "direction": direction})

    def log_retransmission(self, sequence_number: int, retries_left: int):
        self.log_event(EventType.RETRANSMISSION,
                       f"Retransmitting #{sequence_number} ({retries_left} left)",
                       {"sequence_number": sequence_number, "retries_left": retries_left})

    def log_timeout(self, timeout_type: str, context: Optional[Dict] = None):
        data = {**(context or {}), "timeout_type": timeout_type}
        self.log_event(EventType.TIMEOUT, f"Timeout: {timeout_type}", data)

    # Session

    def log_state_change(self, old_state: str, new_state: str, context: Optional[str] = None):
        data = {"old_state": old_state, "new_state": new_state}
        if context:
            data["context"] = context
        self.log_event(EventType.STATE_CHANGE, f"{old_state} -> {new_state}", data)

    def log_connection(self, address: Address, peer_type: Optional[str] = None):
        data = {**_address_fields("", address), "peer_type": peer_type}
        self.log_event(EventType.CONNECTION, f"Connected to {address[0]}:{address[1]}", data)

    def log_disconnection(self, address: Optional[Address] = None):
        self.log_event(EventType.DISCONNECTION, "Disconnected", _address_fields("", address))

    def log_spectator_join(self, address: Address):
        self.log_event(EventType.SPECTATOR_JOIN,
                       f"Spectator joined from {address[0]}:{address[1]}",
                       _address_fields("", address))

    # Battle

    def log_battle_event(self, event: str, data: Optional[Dict] = None):
        self.log_event(EventType.BATTLE_EVENT, event, data)

    def log_chat(self, sender: str, message: str, direction: str = "SENT"):
        self.log_event(EventType.CHAT_MESSAGE, f"Chat {direction}: {sender}: {message}",
                       {"sender": sender, "message": message, "direction": direction})

    def log_discrepancy(self, description: str, data: Optional[Dict] = None):
        """Record a damage or HP mismatch between the two players' calculations."""
        self.log_event(EventType.DISCREPANCY, description, data)

    def log_warning(self, message: str, context: Optional[Dict] = None):
        self.log_event(EventType.WARNING, message, context)

    def log_error(self, message: str, error: Exception, context: Optional[Dict] = None):
        self.log_event(EventType.ERROR, message, context, error)

    # Summaries

    def _traffic(self, event_type: EventType) -> Counter:
        return Counter(e.data.get("message_type", "UNKNOWN")
                       for e in self.events if e.event_type == event_type.value)

    def get_statistics(self) -> Dict:
        """Counts of entries by kind and of datagrams by message type."""
        with self._lock:
            kinds = Counter(e.event_type for e in self.events)
            sent = self._traffic(EventType.MESSAGE_SENT)
            received = self._traffic(EventType.MESSAGE_RECEIVED)
        return {
            "total_time_seconds": time.time() - self.started,
            "total_events": sum(kinds.values()),
            "total_errors": kinds[EventType.ERROR.value],
            "total_warnings": kinds[EventType.WARNING.value],
            "retransmissions": kinds[EventType.RETRANSMISSION.value],
            "discrepancies": kinds[EventType.DISCREPANCY.value],
            "event_type_counts": dict(kinds),
            "sent_by_type": dict(sent),
            "received_by_type": dict(received),
            "messages_sent": sum(sent.values()),
            "messages_received": sum(received.values()),
        }

    def export_to_json(self, filename: Optional[str] = None) -> str:
        """
        Serialize the full trace, optionally writing it to ``filename``.

        Returns:
            The JSON document
        """
        with self._lock:
            events = [event.to_dict() for event in self.events]
        document = {
            "peer_type": self.peer_type,
            "peer_port": self.peer_port,
            "started": datetime.fromtimestamp(self.started).isoformat(),
            "statistics": self.get_statistics(),
            "events": events,
        }
        text = json.dumps(document, indent=2, default=str)
        if filename:
            with open(filename, 'w', encoding='utf-8') as f:
                f.write(text)
        return text
