"""Inputs that drive the SIP transaction state machines."""

from __future__ import annotations

from enum import Enum


class FsmInput(Enum):
    """An event fed into a transaction state machine."""

    NONE = "none"

    # Server transaction inputs
    SERVER_REQUEST = "server_input_request"
    SERVER_ACK = "server_input_ack"
    SERVER_CANCEL = "server_input_cancel"
    SERVER_USER_1XX = "server_input_user_1xx"
    SERVER_USER_2XX = "server_input_user_2xx"
    SERVER_USER_300_PLUS = "server_input_user_300_plus"
    SERVER_TIMER_G = "server_input_timer_g"
    SERVER_TIMER_H = "server_input_timer_h"
    SERVER_TIMER_I = "server_input_timer_i"
    SERVER_TIMER_J = "server_input_timer_j"
    SERVER_TIMER_L = "server_input_timer_l"
    SERVER_TRANSPORT_ERR = "server_input_transport_err"
    SERVER_DELETE = "server_input_delete"

    # Client transaction inputs
    CLIENT_1XX = "client_input_1xx"
    CLIENT_2XX = "client_input_2xx"
    CLIENT_300_PLUS = "client_input_300_plus"
    CLIENT_TIMER_A = "client_input_timer_a"
    CLIENT_TIMER_B = "client_input_timer_b"
    CLIENT_TIMER_D = "client_input_timer_d"
    CLIENT_TIMER_M = "client_input_timer_m"
    CLIENT_TRANSPORT_ERR = "client_input_transport_err"
    CLIENT_DELETE = "client_input_delete"

    def __str__(self) -> str:
        return self.value