"""
Scripted stand-in for Dub.

Every invocation appends its argv, as a JSON line, to FAKE_DUB_LOG.

`remove` and `fetch` exit with FAKE_DUB_EXIT_CODE (default 1).

`run` writes the lines of FAKE_DUB_PROGRESS (a JSON list) to stderr,
then FAKE_DUB_OUTPUT to stdout - without a newline.
FAKE_DUB_OUTPUT_HEX, if set, is written instead, as raw bytes.
FAKE_DUB_SLEEP makes `run` sleep between progress lines.
"""

import json
import os
import sys
import time


def main():
    if log := os.environ.get("FAKE_DUB_LOG"):
        with open(log, "a") as f:
            f.write(json.dumps(sys.argv[1:]) + "\n")

    command = sys.argv[1]

    if command in ("remove", "fetch"):
        sys.exit(int(os.environ.get("FAKE_DUB_EXIT_CODE", "1")))

    if command == "run":
        sleep = float(os.environ.get("FAKE_DUB_SLEEP", "0"))

        for line in json.loads(os.environ.get("FAKE_DUB_PROGRESS", "[]")):
            sys.stderr.write(f"{line}\n")
            sys.stderr.flush()

            if sleep:
                time.sleep(sleep)

        if output_hex := os.environ.get("FAKE_DUB_OUTPUT_HEX"):
            sys.stdout.buffer.write(bytes.fromhex(output_hex))
        else:
            sys.stdout.buffer.write(os.environ.get("FAKE_DUB_OUTPUT", "").encode("utf-8"))

        sys.stdout.flush()


if __name__ == "__main__":
    main()
