"""
Scripted stand-in for DLS.

Usage: fake_dls.py --stdio | --socket=<port>

FAKE_DLS_BEHAVIOR selects what it does:
- lsp (default): answers initialize and shutdown, exits on exit;
- echo: copies bytes read back to the client;
- exit: exits with code 3 right away;
- hang: sleeps without ever talking;
- silent: never answers initialize;
- initialize-error: answers initialize with an error;
- deaf: answers initialize, then never reads again.

In lsp mode, once initialized, it sends the notifications in FAKE_DLS_NOTIFICATIONS
(a JSON list of [method, params]) and the request named by FAKE_DLS_REQUEST.
Notifications and responses it receives from the client are reported back as
`$/test/received` and `$/test/response`.

FAKE_DLS_ARGV, if set, is a file where argv is written as JSON.
"""

import json
import os
import socket
import sys
import time


def read_message(reader):
    headers = {}

    while True:
        line = reader.readline()

        if not line:
            return None

        line = line.decode("ascii").strip()

        if not line:
            if headers:
                break

            continue

        k, v = line.split(":", 1)

        headers[k.strip()] = v.strip()

    content = reader.read(int(headers["Content-Length"]))

    return json.loads(content.decode("utf-8"))


def write_message(writer, message):
    content = json.dumps(message).encode("utf-8")

    writer.write(f"Content-Length: {len(content)}\r\n\r\n".encode("ascii") + content)
    writer.flush()


def notify(writer, method, params):
    write_message(writer, {"jsonrpc": "2.0", "method": method, "params": params})


def serve_lsp(reader, writer, behavior):
    notifications = json.loads(os.environ.get("FAKE_DLS_NOTIFICATIONS", "[]"))
    server_request = os.environ.get("FAKE_DLS_REQUEST")
    initialize_params = {}

    while (message := read_message(reader)) is not None:
        method = message.get("method")

        if method == "initialize":
            initialize_params = message.get("params") or {}

            if behavior == "silent":
                continue

            if behavior == "initialize-error":
                write_message(
                    writer,
                    {
                        "jsonrpc": "2.0",
                        "id": message["id"],
                        "error": {"code": -32603, "message": "Boom"},
                    },
                )
                continue

            write_message(
                writer,
                {
                    "jsonrpc": "2.0",
                    "id": message["id"],
                    "result": {
                        "capabilities": {},
                        "serverInfo": {"name": "fake-dls", "version": "1.0"},
                    },
                },
            )

            if behavior == "deaf":
                time.sleep(60)
                return

        elif method == "initialized":
            notify(
                writer,
                "$/test/initialized",
                {
                    "initializationOptions": initialize_params.get(
                        "initializationOptions"
                    )
                },
            )

            for method_, params in notifications:
                notify(writer, method_, params)

            if server_request:
                write_message(
                    writer,
                    {
                        "jsonrpc": "2.0",
                        "id": "server-1",
                        "method": server_request,
                        "params": None,
                    },
                )

        elif method == "shutdown":
            write_message(writer, {"jsonrpc": "2.0", "id": message["id"], "result": None})

        elif method == "exit":
            return

        elif method is None:
            notify(writer, "$/test/response", message)

        else:
            notify(
                writer,
                "$/test/received",
                {"method": method, "params": message.get("params")},
            )


def echo(reader, writer):
    while chunk := reader.read1(4096):
        writer.write(chunk)
        writer.flush()


def main():
    behavior = os.environ.get("FAKE_DLS_BEHAVIOR", "lsp")

    if argv_file := os.environ.get("FAKE_DLS_ARGV"):
        with open(argv_file, "w") as f:
            json.dump(sys.argv[1:], f)

    if behavior == "exit":
        sys.exit(3)

    if behavior == "hang":
        time.sleep(60)
        return

    arg = sys.argv[1]

    if arg == "--stdio":
        reader, writer = sys.stdin.buffer, sys.stdout.buffer

    elif arg.startswith("--socket="):
        port = int(arg.split("=", 1)[1])

        sock = socket.create_connection(("127.0.0.1", port))

        reader, writer = sock.makefile("rb"), sock.makefile("wb")

    else:
        sys.exit(2)

    if behavior == "echo":
        echo(reader, writer)
    else:
        serve_lsp(reader, writer, behavior)


if __name__ == "__main__":
    main()
