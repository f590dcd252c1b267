"""
App layer: the daemon's HTTP side and its client.

Roles:
- main: FastAPI app factory (session server routes + static form files)
- daemon: socket, port advertisement, watchdog, uvicorn
- client: discovery protocol used by the host's launcher
- no session state of its own (core.registry owns it)
"""
