"""Server transaction: the RFC 3261 / RFC 6026 server state machines."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .connection_pool import Connection
from .fsm import FsmInput
from .transport import is_reliable

STATUS_TRYING = 100
STATUS_REQUEST_TERMINATED = 487

ResponseFactory = Callable[[Any, int, str], Any]


class TransactionCanceledError(Exception):
    """The transaction was canceled by a CANCEL request."""

    def __init__(self) -> None:
        super().__init__("transaction canceled")


class TxState(Enum):
    """States of the server transaction machines."""

    TRYING = "trying"
    PROCEEDING = "proceeding"
    COMPLETED = "completed"
    CONFIRMED = "confirmed"
    ACCEPTED = "accepted"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class TxTimers:
    """Transaction timer durations in seconds."""

    t2: float = 4.0
    timer_g: float = 0.5
    timer_h: float = 32.0
    timer_i: float = 5.0
    timer_j: float = 32.0
    timer_l: float = 32.0
    timer_1xx: float = 0.2


def _is_provisional(res: Any) -> bool:
    return res.status_code < 200


def _is_success(res: Any) -> bool:
    return 200 <= res.status_code < 300


class ServerTx:
    """A server transaction matched to one incoming request.

    Requests are expected to carry ``method`` and ``transport``; responses
    carry ``status_code`` and ``method``, the method of their CSeq.
    ``response_factory(request, status, reason)`` builds the responses the
    transaction sends by itself (100 Trying, 487 Request Terminated).
    """

    def __init__(
        self,
        key: str,
        origin: Any,
        conn: Connection,
        response_factory: ResponseFactory,
        logger: Optional[logging.Logger] = None,
        timers: Optional[TxTimers] = None,
    ) -> None:
        self.key = key
        self.origin = origin
        self.conn = conn
        self._response_factory = response_factory
        self._log = logger or logging.getLogger(__name__)
        self._timers = timers or TxTimers()
        self._reliable = is_reliable(origin.transport)
        self._invite = origin.method == "INVITE"

        self.acks: queue.Queue[Any] = queue.Queue()
        self._done = threading.Event()

        self._fsm_lock = threading.RLock()
        self._state = TxState.PROCEEDING if self._invite else TxState.TRYING
        self._fsm_resp: Any = None
        self._fsm_ack: Any = None
        self._fsm_cancel: Any = None
        self._err: Optional[BaseException] = None

        self._lock = threading.Lock()
        self._on_cancel: Optional[Callable[[Any], None]] = None
        self._on_terminate: Optional[Callable[[str], None]] = None
        self._terminated = False

        self._timer_g: Optional[threading.Timer] = None
        self._timer_h: Optional[threading.Timer] = None
        self._timer_i: Optional[threading.Timer] = None
        self._timer_j: Optional[threading.Timer] = None
        self._timer_l: Optional[threading.Timer] = None
        self._timer_1xx: Optional[threading.Timer] = None
        self._timer_g_time = 0.0
        self._timer_i_time = 0.0
        self._timer_j_time = 0.0

    # Public surface

    @property
    def state(self) -> TxState:
        """Current state of the machine."""
        with self._fsm_lock:
            return self._state

    @property
    def done(self) -> threading.Event:
        """Set once the transaction has terminated."""
        return self._done

    @property
    def err(self) -> Optional[BaseException]:
        """Error that ended or affected the transaction, if any."""
        with self._fsm_lock:
            return self._err

    def init(self) -> None:
        """Set timer durations and, for INVITE, schedule an automatic 100 Trying."""
        with self._lock:
            if not self._reliable:
                self._timer_g_time = self._timers.timer_g
                self._timer_i_time = self._timers.timer_i
                self._timer_j_time = self._timers.timer_j
            if self._invite:
                timer = threading.Timer(self._timers.timer_1xx, self._send_trying)
                timer.daemon = True
                self._timer_1xx = timer
                timer.start()
        self._log.debug("Server transaction initialized tx=%s", self.key)

    def receive(self, req: Any) -> None:
        """Feed a retransmission, ACK or CANCEL matched to this transaction."""
        self._stop_1xx()
        if req.method == self.origin.method:
            inp = FsmInput.SERVER_REQUEST
        elif req.method == "ACK":
            inp = FsmInput.SERVER_ACK
        elif req.method == "CANCEL":
            inp = FsmInput.SERVER_CANCEL
        else:
            raise ValueError("unexpected message error")

        with self._fsm_lock:
            if inp is FsmInput.SERVER_ACK:
                self._fsm_ack = req
            elif inp is FsmInput.SERVER_CANCEL:
                self._fsm_cancel = req
            self._spin(inp)

    def respond(self, res: Any) -> None:
        """Send a response through the state machine; raise the transaction error if any."""
        if getattr(res, "method", None) == "CANCEL":
            self.conn.write_msg(res)
            return

        self._stop_1xx()
        if _is_provisional(res):
            inp = FsmInput.SERVER_USER_1XX
        elif _is_success(res):
            inp = FsmInput.SERVER_USER_2XX
        else:
            inp = FsmInput.SERVER_USER_300_PLUS

        with self._fsm_lock:
            self._fsm_resp = res
            self._spin(inp)
            err = self._err
        if err is not None:
            raise err

    def on_cancel(self, fn: Callable[[Any], None]) -> None:
        """Call ``fn`` with the CANCEL request when one arrives."""
        with self._lock:
            self._on_cancel = fn

    def on_terminate(self, fn: Callable[[str], None]) -> None:
        """Call ``fn`` with the transaction key once, when it terminates."""
        with self._lock:
            self._on_terminate = fn

    def terminate(self) -> None:
        """Terminate immediately."""
        self._log.debug("Server transaction terminating tx=%s", self.key)
        self._delete()

    def terminate_gracefully(self) -> None:
        """Wait out retransmissions of a final response before terminating."""
        if self._reliable:
            self.terminate()
            return
        with self._fsm_lock:
            finalized = self._fsm_resp is not None and not _is_provisional(self._fsm_resp)
        if not finalized:
            self.terminate()
            return
        self._log.debug("Server transaction waiting termination tx=%s", self.key)
        self._done.wait()

    # Machinery

    def _spin(self, inp: FsmInput) -> None:
        table = _INVITE_TABLE if self._invite else _NON_INVITE_TABLE
        while inp is not FsmInput.NONE:
            step = table.get((self._state, inp))
            if step is None:
                return
            self._state, action = step
            inp = action(self)

    def _spin_fsm(self, inp: FsmInput) -> None:
        with self._fsm_lock:
            self._spin(inp)

    def _start_timer(self, delay: float, inp: FsmInput) -> threading.Timer:
        timer = threading.Timer(delay, self._spin_fsm, args=(inp,))
        timer.daemon = True
        timer.start()
        return timer

    def _stop_1xx(self) -> None:
        with self._lock:
            if self._timer_1xx is not None:
                self._timer_1xx.cancel()
                self._timer_1xx = None

    def _send_trying(self) -> None:
        trying = self._response_factory(self.origin, STATUS_TRYING, "Trying")
        try:
            self.respond(trying)
        except Exception as exc:  # logged from a timer thread
            self._log.error("send '100 Trying' response failed tx=%s: %s", self.key, exc)

    def _delete(self) -> None:
        with self._lock:
            first = not self._terminated
            self._terminated = True
            self._done.set()
            on_terminate = self._on_terminate
        if first and on_terminate is not None:
            on_terminate(self.key)

        with self._lock:
            for name in ("_timer_i", "_timer_g", "_timer_h", "_timer_j", "_timer_1xx"):
                timer = getattr(self, name)
                if timer is not None:
                    timer.cancel()
                    setattr(self, name, None)
        self._log.debug("Server transaction destroyed tx=%s", self.key)

    def _pass_resp(self) -> bool:
        res = self._fsm_resp
        if res is None:
            return True
        try:
            self.conn.write_msg(res)
        except (OSError, ValueError) as exc:
            self._log.debug("fail to pass response tx=%s: %s", self.key, exc)
            self._err = exc
            return False
        return True

    def _pass_ack(self) -> None:
        if self._fsm_ack is not None:
            self.acks.put_nowait(self._fsm_ack)

    # Actions

    def _act_respond(self) -> FsmInput:
        if not self._pass_resp():
            return FsmInput.SERVER_TRANSPORT_ERR
        return FsmInput.NONE

    def _act_respond_complete(self) -> FsmInput:
        if not self._pass_resp():
            return FsmInput.SERVER_TRANSPORT_ERR
        with self._lock:
            if not self._reliable:
                if self._timer_g is None:
                    self._timer_g = self._start_timer(self._timer_g_time, FsmInput.SERVER_TIMER_G)
                else:
                    self._timer_g_time = min(self._timer_g_time * 2, self._timers.t2)
                    self._timer_g.cancel()
                    self._timer_g = self._start_timer(self._timer_g_time, FsmInput.SERVER_TIMER_G)
            if self._timer_h is None:
                self._timer_h = self._start_timer(self._timers.timer_h, FsmInput.SERVER_TIMER_H)
        return FsmInput.NONE

    def _act_respond_accept(self) -> FsmInput:
        if not self._pass_resp():
            return FsmInput.SERVER_TRANSPORT_ERR
        with self._lock:
            self._timer_l = self._start_timer(self._timers.timer_l, FsmInput.SERVER_TIMER_L)
        return FsmInput.NONE

    def _act_passup_ack(self) -> FsmInput:
        self._pass_ack()
        return FsmInput.NONE

    def _act_final(self) -> FsmInput:
        if not self._pass_resp():
            return FsmInput.SERVER_TRANSPORT_ERR
        # Timer J is zero on reliable transports, so termination follows at once.
        with self._lock:
            self._timer_j = self._start_timer(self._timer_j_time, FsmInput.SERVER_TIMER_J)
        return FsmInput.NONE

    def _act_trans_err(self) -> FsmInput:
        self._log.debug("Transport error. Transaction will terminate tx=%s error=%s", self.key, self._err)
        return FsmInput.SERVER_DELETE

    def _act_delete(self) -> FsmInput:
        self._delete()
        return FsmInput.NONE

    def _act_confirm(self) -> FsmInput:
        with self._lock:
            if self._timer_g is not None:
                self._timer_g.cancel()
                self._timer_g = None
            if self._timer_h is not None:
                self._timer_h.cancel()
                self._timer_h = None
            self._timer_i = self._start_timer(self._timer_i_time, FsmInput.SERVER_TIMER_I)
        self._pass_ack()
        return FsmInput.NONE

    def _act_cancel(self) -> FsmInput:
        req = self._fsm_cancel
        if req is None:
            return FsmInput.NONE
        with self._lock:
            on_cancel = self._on_cancel
        if on_cancel is not None:
            on_cancel(req)
        self._log.debug("Passing 487 on CANCEL tx=%s", self.key)
        self._fsm_resp = self._response_factory(self.origin, STATUS_REQUEST_TERMINATED, "Request Terminated")
        self._err = TransactionCanceledError()
        return FsmInput.SERVER_USER_300_PLUS


_Step = tuple[TxState, Callable[[ServerTx], FsmInput]]

_INVITE_TABLE: dict[tuple[TxState, FsmInput], _Step] = {
    (TxState.PROCEEDING, FsmInput.SERVER_REQUEST): (TxState.PROCEEDING, ServerTx._act_respond),
    (TxState.PROCEEDING, FsmInput.SERVER_CANCEL): (TxState.PROCEEDING, ServerTx._act_cancel),
    (TxState.PROCEEDING, FsmInput.SERVER_USER_1XX): (TxState.PROCEEDING, ServerTx._act_respond),
    (TxState.PROCEEDING, FsmInput.SERVER_USER_2XX): (TxState.ACCEPTED, ServerTx._act_respond_accept),
    (TxState.PROCEEDING, FsmInput.SERVER_USER_300_PLUS): (TxState.COMPLETED, ServerTx._act_respond_complete),
    (TxState.PROCEEDING, FsmInput.SERVER_TRANSPORT_ERR): (TxState.TERMINATED, ServerTx._act_trans_err),
    (TxState.COMPLETED, FsmInput.SERVER_REQUEST): (TxState.COMPLETED, ServerTx._act_respond),
    (TxState.COMPLETED, FsmInput.SERVER_ACK): (TxState.CONFIRMED, ServerTx._act_confirm),
    (TxState.COMPLETED, FsmInput.SERVER_TIMER_G): (TxState.COMPLETED, ServerTx._act_respond_complete),
    (TxState.COMPLETED, FsmInput.SERVER_TIMER_H): (TxState.TERMINATED, ServerTx._act_delete),
    (TxState.COMPLETED, FsmInput.SERVER_TRANSPORT_ERR): (TxState.TERMINATED, ServerTx._act_trans_err),
    (TxState.CONFIRMED, FsmInput.SERVER_TIMER_I): (TxState.TERMINATED, ServerTx._act_delete),
    (TxState.ACCEPTED, FsmInput.SERVER_ACK): (TxState.ACCEPTED, ServerTx._act_passup_ack),
    (TxState.ACCEPTED, FsmInput.SERVER_USER_2XX): (TxState.ACCEPTED, ServerTx._act_respond),
    (TxState.ACCEPTED, FsmInput.SERVER_TIMER_L): (TxState.TERMINATED, ServerTx._act_delete),
    (TxState.TERMINATED, FsmInput.SERVER_DELETE): (TxState.TERMINATED, ServerTx._act_delete),
}

_NON_INVITE_TABLE: dict[tuple[TxState, FsmInput], _Step] = {
    (TxState.TRYING, FsmInput.SERVER_USER_1XX): (TxState.PROCEEDING, ServerTx._act_respond),
    (TxState.TRYING, FsmInput.SERVER_USER_2XX): (TxState.COMPLETED, ServerTx._act_final),
    (TxState.TRYING, FsmInput.SERVER_USER_300_PLUS): (TxState.COMPLETED, ServerTx._act_final),
    (TxState.TRYING, FsmInput.SERVER_TRANSPORT_ERR): (TxState.TERMINATED, ServerTx._act_trans_err),
    (TxState.PROCEEDING, FsmInput.SERVER_REQUEST): (TxState.PROCEEDING, ServerTx._act_respond),
    (TxState.PROCEEDING, FsmInput.SERVER_USER_1XX): (TxState.PROCEEDING, ServerTx._act_respond),
    (TxState.PROCEEDING, FsmInput.SERVER_USER_2XX): (TxState.COMPLETED, ServerTx._act_final),
    (TxState.PROCEEDING, FsmInput.SERVER_USER_300_PLUS): (TxState.COMPLETED, ServerTx._act_final),
    (TxState.PROCEEDING, FsmInput.SERVER_TRANSPORT_ERR): (TxState.TERMINATED, ServerTx._act_trans_err),
    (TxState.COMPLETED, FsmInput.SERVER_REQUEST): (TxState.COMPLETED, ServerTx._act_respond),
    (TxState.COMPLETED, FsmInput.SERVER_TIMER_J): (TxState.TERMINATED, ServerTx._act_delete),
    (TxState.COMPLETED, FsmInput.SERVER_TRANSPORT_ERR): (TxState.TERMINATED, ServerTx._act_trans_err),
    (TxState.TERMINATED, FsmInput.SERVER_DELETE): (TxState.TERMINATED, ServerTx._act_delete),
}