#!/usr/bin/env python3
"""
LaTeX Preview Server
Provides HTTP server with WebSocket for live LaTeX preview
Renders incrementally: each update is diffed against the previous one and
only changed blocks are sent to the browser as a patch
"""

import argparse
import html
import asyncio
import json
import logging
import sys
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from threading import Lock, Thread

import websockets

from diff_engine import FULL_RENDER_THRESHOLD, FullPayload, IncrementalDiffEngine
from latex_processor import LaTeXProcessor

DEFAULT_LOG_FILE = Path.home() / '.texpreview' / 'texpreview.log'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger('texpreview')


def setup_logging(log_file=DEFAULT_LOG_FILE, level='DEBUG'):
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.DEBUG),
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stderr)
        ]
    )


class PreviewServer:
    def __init__(self, port=8765, ws_port=8766, debounce_delay=0.1,
                 full_threshold=FULL_RENDER_THRESHOLD, rules_file=None):
        logger.info(f"Initializing PreviewServer on port {port}")
        self.port = port
        self.ws_port = ws_port
        self.clients = set()
        self.loop = None  # Will be set to the asyncio event loop

        latex_processor = LaTeXProcessor()
        if rules_file:
            latex_processor.load_rules_file(rules_file)
        self.engine = IncrementalDiffEngine(latex_processor=latex_processor,
                                            full_threshold=full_threshold)
        self._current_path = None

        # Debouncing state
        self._debounce_task = None
        self._debounce_delay = debounce_delay
        self._pending_update = None
        self._update_lock = Lock()

        # Performance monitoring
        self._update_count = 0
        self._total_processing_time = 0.0
        self._full_count = 0
        self._patch_count = 0

    async def websocket_handler(self, websocket):
        """Handle WebSocket connections"""
        logger.info(f"New WebSocket connection from {websocket.remote_address}")
        self.clients.add(websocket)
        try:
            # A new client has nothing to patch, so it starts from the whole cache
            current = self.engine.current_html()
            logger.debug(f"Sending current HTML ({len(current)} bytes) to new client")
            await websocket.send(json.dumps(FullPayload(current).to_dict()))

            await websocket.wait_closed()
        except Exception as e:
            logger.error(f"WebSocket error: {e}", exc_info=True)
        finally:
            logger.info(f"WebSocket connection closed from {websocket.remote_address}")
            self.clients.discard(websocket)

    async def broadcast_update(self, message):
        """Send a payload message to all connected clients"""
        if not self.clients:
            return
        message_str = json.dumps(message)
        logger.debug(f"Broadcasting {message['type']} to {len(self.clients)} clients "
                     f"({len(message_str)} bytes)")
        results = await asyncio.gather(
            *[client.send(message_str) for client in self.clients],
            return_exceptions=True
        )
        for i, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error(f"Failed to send to client {i}: {result}")

    def process_update(self, content, filepath=''):
        """Render the full document text into a payload dict, tracking performance"""
        start_time = time.time()
        if filepath != self._current_path:
            if self._current_path is not None:
                logger.info(f"Document changed to {filepath}, resetting engine")
            self.engine.reset()
            self._current_path = filepath

        try:
            payload = self.engine.render(content)
        except Exception as e:
            logger.error(f"Error rendering document: {e}", exc_info=True)
            self.engine.reset()
            return FullPayload(f"<p style='color: red;'>Error rendering document: {html.escape(str(e))}</p>").to_dict()

        if isinstance(payload, FullPayload):
            self._full_count += 1
        else:
            self._patch_count += 1

        processing_time = time.time() - start_time
        self._total_processing_time += processing_time
        self._update_count += 1
        logger.info(f"Document rendered in {processing_time:.3f}s ({type(payload).__name__})")
        return payload.to_dict()

    def reset(self):
        logger.info("Resetting preview session")
        self.engine.reset()
        self._current_path = None

    async def queue_update(self, content, filepath=''):
        """Queue an update with debouncing"""
        logger.debug(f"Queuing update: {len(content)} bytes")
        with self._update_lock:
            self._pending_update = (content, filepath)

            if self._debounce_task and not self._debounce_task.done():
                logger.debug("Cancelling previous debounce task")
                self._debounce_task.cancel()

            self._debounce_task = asyncio.create_task(self._debounced_update())

    async def _debounced_update(self):
        """Execute update after debounce delay"""
        try:
            await asyncio.sleep(self._debounce_delay)

            with self._update_lock:
                pending = self._pending_update
                self._pending_update = None
            if pending:
                content, filepath = pending
                message = self.process_update(content, filepath)
                await self.broadcast_update(message)
        except asyncio.CancelledError:
            logger.debug("Debounce task cancelled")
        except Exception as e:
            logger.error(f"Error in debounced update: {e}", exc_info=True)

    async def queue_reset(self):
        with self._update_lock:
            self._pending_update = None
        self.reset()
        await self.broadcast_update(FullPayload('').to_dict())

    def get_stats(self):
        """Get performance statistics"""
        avg_time = (self._total_processing_time / self._update_count) if self._update_count > 0 else 0
        return {
            'updates': self._update_count,
            'avg_processing_time_ms': avg_time * 1000,
            'total_time_s': self._total_processing_time,
            'full_payloads': self._full_count,
            'patch_payloads': self._patch_count,
            'engine': self.engine.stats(),
        }

    def get_template_html(self):
        """Get HTML template pointed at the configured WebSocket port"""
        return PAGE_TEMPLATE.replace(WS_PORT_PLACEHOLDER, str(self.ws_port))


WS_PORT_PLACEHOLDER = '__WS_PORT__'

PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>LaTeX Preview</title>
    <style>
        * { margin: 0; padding: 0; box-sizing: border-box; }
        body {
            font-family: "Latin Modern Roman", "Times New Roman", serif;
            line-height: 1.6;
            color: #222;
            background: #fff;
            padding: 20px;
            max-width: 900px;
            margin: 0 auto;
        }
        h1, h2, h3, h4 { margin: 1.2em 0 0.5em 0; font-weight: 600; line-height: 1.25; }
        h1.latex-title { text-align: center; font-size: 1.8em; }
        .latex-author { text-align: center; margin-bottom: 1.5em; }
        p { margin: 0.6em 0; text-indent: 2em; }
        .no-indent-marker + *, p:has(> .no-indent-marker:first-child) { text-indent: 0; }
        a { color: #0366d6; text-decoration: none; }
        .latex-citep-container::before { content: "["; }
        .latex-citep-container::after { content: "]"; }
        .latex-eqref-container::before { content: "("; }
        .latex-eqref-container::after { content: ")"; }
        ul, ol { margin: 0.6em 0; padding-left: 2em; }
        .math-display { text-align: center; margin: 1em 0; overflow-x: auto; }
        .latex-math-error { font-family: monospace; }
        .latex-abstract { margin: 1.5em 3em; font-size: 0.95em; }
        .latex-abstract-title { display: block; text-align: center; font-weight: 600; }
        .latex-keywords { margin: 0 3em 1.5em 3em; }
        .latex-float-placeholder {
            border: 1px dashed #999;
            border-radius: 4px;
            padding: 8px 12px;
            margin: 1em 0;
            background: #fafafa;
        }
        .float-content { white-space: pre-wrap; font-size: 85%; color: #555; }
        .status {
            position: fixed;
            top: 10px;
            right: 10px;
            padding: 5px 10px;
            background: #28a745;
            color: white;
            border-radius: 4px;
            font-size: 12px;
            opacity: 0;
            transition: opacity 0.3s;
        }
        .status.show { opacity: 1; }
        .status.error { background: #dc3545; }
    </style>
</head>
<body>
    <div class="status" id="status">Connected</div>
    <div id="content"></div>

    <script>
        let ws = null;
        const content = document.getElementById('content');

        function applyPayload(payload) {
            if (payload.type === 'full') {
                content.innerHTML = payload.html;
                return;
            }
            // Anchor is located before mutating so inserts land in place
            const anchor = content.children[payload.start + payload.deleteCount] || null;
            for (let i = 0; i < payload.deleteCount; i++) {
                if (content.children[payload.start]) {
                    content.removeChild(content.children[payload.start]);
                }
            }
            const fragment = document.createDocumentFragment();
            const holder = document.createElement('div');
            (payload.htmls || []).forEach(html => {
                holder.innerHTML = html;
                const node = holder.firstElementChild;
                if (node) fragment.appendChild(node);
            });
            content.insertBefore(fragment, anchor && anchor.parentNode === content ? anchor : null);
        }

        function connect() {
            const wsPort = __WS_PORT__;
            ws = new WebSocket('ws://localhost:' + wsPort + '/ws');

            ws.onopen = function() {
                showStatus('Connected', false);
            };

            ws.onmessage = function(event) {
                applyPayload(JSON.parse(event.data));
                showStatus('Updated', false);
            };

            ws.onerror = function(error) {
                showStatus('Connection error', true);
            };

            ws.onclose = function() {
                showStatus('Disconnected', true);
                setTimeout(connect, 2000);
            };
        }

        function showStatus(message, isError) {
            const status = document.getElementById('status');
            status.textContent = message;
            status.className = 'status show' + (isError ? ' error' : '');
            setTimeout(() => {
                status.className = 'status';
            }, 2000);
        }

        connect();
    </script>
</body>
</html>"""


class RequestHandler(BaseHTTPRequestHandler):
    server_instance = None

    def log_message(self, format, *args):
        """Custom logging to use our logger"""
        logger.debug(f"HTTP {format % args}")

    def _send_json(self, status, body):
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()
        self.wfile.write(json.dumps(body, indent=2).encode())

    def _schedule(self, coroutine):
        if self.server_instance.loop:
            asyncio.run_coroutine_threadsafe(coroutine, self.server_instance.loop)
        else:
            coroutine.close()
            logger.error("No event loop available!")

    def do_GET(self):
        """Handle GET requests"""
        logger.debug(f"GET {self.path}")
        if self.path == '/' or self.path == '/index.html':
            self.send_response(200)
            self.send_header('Content-Type', 'text/html')
            self.end_headers()
            page = self.server_instance.get_template_html()
            self.wfile.write(page.encode())
            logger.info(f"Served template HTML ({len(page)} bytes)")
        else:
            self.send_response(404)
            self.end_headers()
            logger.warning(f"404: {self.path}")

    def do_POST(self):
        """Handle POST requests for content updates, resets and statistics"""
        logger.debug(f"POST {self.path}")
        try:
            if self.path == '/update':
                content_length = int(self.headers['Content-Length'])
                data = json.loads(self.rfile.read(content_length).decode())
                content = data.get('content', '')
                filepath = data.get('filepath', '')
                logger.info(f"Update request: {len(content)} bytes, filepath={filepath}")
                self._schedule(self.server_instance.queue_update(content, filepath))
                self._send_json(200, {'status': 'ok'})
            elif self.path == '/reset':
                self._schedule(self.server_instance.queue_reset())
                self._send_json(200, {'status': 'ok'})
            elif self.path == '/stats':
                self._send_json(200, self.server_instance.get_stats())
            else:
                self.send_response(404)
                self.end_headers()
        except Exception as e:
            logger.error(f"Error processing {self.path} request: {e}", exc_info=True)
            self._send_json(500, {'status': 'error', 'message': str(e)})


async def start_websocket_server(server, ws_port):
    """Start WebSocket server"""
    server.loop = asyncio.get_running_loop()
    logger.info(f"Starting WebSocket server on port {ws_port}")

    async def handler(websocket):
        await server.websocket_handler(websocket)

    try:
        async with websockets.serve(handler, 'localhost', ws_port):
            logger.info(f"WebSocket server listening on ws://localhost:{ws_port}")
            await asyncio.Future()  # run forever
    except Exception as e:
        logger.error(f"WebSocket server error: {e}", exc_info=True)
        raise


def start_http_server(server, port):
    """Start HTTP server"""
    RequestHandler.server_instance = server
    httpd = HTTPServer(('localhost', port), RequestHandler)
    logger.info(f"HTTP server started on http://localhost:{port}")
    print(f"Server started on http://localhost:{port}", flush=True)
    httpd.serve_forever()


def main(argv=None):
    parser = argparse.ArgumentParser(description='LaTeX Preview Server')
    parser.add_argument('--port', type=int, default=8765, help='HTTP server port')
    parser.add_argument('--ws-port', type=int, default=8766, help='WebSocket server port')
    parser.add_argument('--debounce', type=float, default=0.1, help='Debounce delay in seconds')
    parser.add_argument('--full-threshold', type=int, default=FULL_RENDER_THRESHOLD,
                        help='Changed block count above which a full render is sent')
    parser.add_argument('--rules', type=str, default=None, help='Python file defining extra RULES')
    parser.add_argument('--log-file', type=str, default=str(DEFAULT_LOG_FILE), help='Log file path')
    parser.add_argument('--log-level', type=str, default='DEBUG', help='Logging level')
    args = parser.parse_args(argv)

    setup_logging(args.log_file, args.log_level)
    logger.info("=" * 60)
    logger.info("Starting LaTeX Preview Server")
    logger.info(f"HTTP port: {args.port}, WebSocket port: {args.ws_port}")
    logger.info(f"Log file: {args.log_file}")
    logger.info("=" * 60)

    server = PreviewServer(port=args.port, ws_port=args.ws_port, debounce_delay=args.debounce,
                           full_threshold=args.full_threshold, rules_file=args.rules)

    # Start HTTP server in a thread
    http_thread = Thread(target=start_http_server, args=(server, args.port), daemon=True)
    http_thread.start()

    try:
        asyncio.run(start_websocket_server(server, args.ws_port))
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        print("\nServer stopped", flush=True)
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
        print(f"Error: {e}", flush=True)


if __name__ == '__main__':
    main()
