"""Lamphub: live connection layer.

  - Connections: WebSocket handles with opaque ids and best-effort fan-out
  - Registry: MAC → live device connection, plus the observer set
  - Router: dispatch of inbound messages by type
  - Lifecycle: registration handshake, heartbeat, disconnect cleanup
  - Manager: the RelayHub that wires them together
"""
