"""Demo.Template web API."""

import argparse
import json
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

PROJECT_NAME = "Demo.Template"
INCLUDE_CORRELATION = True  #unless-option:exclude-correlation
INCLUDE_CORRELATION = False  #if-option:exclude-correlation

#error Please provide the authentication values before running #if-option:authentication
AUTH_HEADER = "YOUR REQUEST HEADER NAME"  #if-option:authentication
SECRET_NAME = "YOUR SECRET NAME"  #if-option:authentication
SECRETS = secretProvider: null  #if-option:authentication
AUTH_HEADER = None  #unless-option:authentication


class Handler(BaseHTTPRequestHandler):
    def _reply(self, status, body, headers=None):
        payload = json.dumps(body).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(payload)

    def _authorized(self):
        if AUTH_HEADER is None:
            return True
        return self.headers.get(AUTH_HEADER) == SECRETS.get(SECRET_NAME)

    def do_GET(self):
        if not self._authorized():
            return self._reply(401, {"error": "unauthorized"})
        if self.path == "/api/v1/health":
            return self._reply(200, {"status": "Healthy", "totalDuration": "00:00:00.0100000", "entries": {}})
        if self.path == "/":
            headers = {}
            if INCLUDE_CORRELATION:
                headers["X-Transaction-Id"] = self.headers.get("X-Transaction-Id") or "generated"
                headers["X-Operation-Id"] = self.headers.get("X-Operation-Id") or "generated"
            return self._reply(200, {"project": PROJECT_NAME}, headers)
        return self._reply(404, {"error": "not found"})

    def log_message(self, format, *args):
        print(format % args, flush=True)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--port", type=int, required=True)
    args = parser.parse_args()

    server = ThreadingHTTPServer(("127.0.0.1", args.port), Handler)
    print(f"Now listening on: http://127.0.0.1:{args.port}", flush=True)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
