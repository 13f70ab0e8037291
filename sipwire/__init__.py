"""SIP URIs, UDP/TCP/TLS transports, connection pooling and server transactions."""

__version__ = "0.1.0"