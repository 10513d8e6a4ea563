"""
Minimal TCP service used by the integration tests.

Listens on $PORT, records its environment in $ORDO_ROOT/env.json and exits
cleanly on SIGTERM.
"""
import json
import os
import signal
import socket
import sys


def main():
    root = os.environ.get("ORDO_ROOT")
    if root:
        os.makedirs(root, exist_ok=True)
        with open(os.path.join(root, "env.json"), "w") as f:
            json.dump(dict(os.environ), f)

    signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(0))

    port = int(os.environ["PORT"])
    server = socket.create_server(("127.0.0.1", port))
    print(f"Dummy service listening on {port}", flush=True)
    while True:
        conn, _ = server.accept()
        conn.close()


if __name__ == "__main__":
    main()
