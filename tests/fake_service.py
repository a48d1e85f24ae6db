"""Stand-in network service used by the supervisor tests.

Prints a few boot lines, optionally waits, then serves HTTP on --port:
GET answers --health-status, POST answers --rpc-status with a JSON-RPC body.
"""
import argparse
import http.server
import json
import sys
import time


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--name", default="svc")
    parser.add_argument("--port", type=int, default=0)
    parser.add_argument("--health-status", type=int, default=200)
    parser.add_argument("--rpc-status", type=int, default=200)
    parser.add_argument("--delay", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=None, help="exit right after booting")
    parser.add_argument("--no-listen", action="store_true")
    args = parser.parse_args()

    print(f"{args.name} booting", flush=True)
    print(f"{args.name} stderr line", file=sys.stderr, flush=True)
    if args.exit_code is not None:
        print(f"{args.name} fatal: exiting with {args.exit_code}", flush=True)
        sys.exit(args.exit_code)
    if args.delay:
        time.sleep(args.delay)
    if args.no_listen:
        while True:
            time.sleep(1)

    class Handler(http.server.BaseHTTPRequestHandler):
        def _reply(self, status: int, body: bytes = b"") -> None:
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if body:
                self.wfile.write(body)

        def do_GET(self):
            self._reply(args.health_status)

        def do_POST(self):
            length = int(self.headers.get("Content-Length", 0))
            req = json.loads(self.rfile.read(length) or b"{}")
            body = json.dumps({"jsonrpc": "2.0", "id": req.get("id"), "result": f"{args.name}/v0.1"})
            self._reply(args.rpc_status, body.encode())

        def log_message(self, fmt, *fmt_args):
            print(f"{args.name} http {fmt % fmt_args}", flush=True)

    server = http.server.HTTPServer(("127.0.0.1", args.port), Handler)
    print(f"{args.name} listening on {args.port}", flush=True)
    server.serve_forever()


if __name__ == "__main__":
    main()
