#!/usr/bin/env python3
"""
chatgate CLI.

Every command has a short name and a standard alias:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the chat gateway server
    search          recall          Semantic search over one user's memory
    ring            status, ping    Ping a running instance
    flash           info, config    Show config at a glance
"""

import argparse
import asyncio

from chatgate import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the chat gateway server."""
    import uvicorn
    from chatgate.config import section

    server = section("server")
    backend = section("backend")
    host = args.host or server.get("host", "0.0.0.0")
    port = args.port or server.get("port", 8080)

    print(f"  chatgate v{__version__}")
    print(f"  Listening on {host}:{port}")
    print(f"  Model: {backend.get('model', '?')} ({backend.get('provider', 'gemini')})")
    print()

    uvicorn.run(
        "chatgate.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_search(args):
    """Semantic search over one user's stored messages."""
    from chatgate.config import get_config
    from chatgate.storage.backends import make_vector_backend
    from chatgate.storage.embeddings import make_embedding_service
    from chatgate.storage.vector_store import VectorMemory

    cfg = get_config()
    memory = VectorMemory(embeddings=make_embedding_service(cfg), backend=make_vector_backend(cfg))

    query = " ".join(args.query)
    print(f"  Searching {args.user}'s memory for: '{query}'")
    print("  " + "─" * 56)

    hits = asyncio.run(memory.search(args.user, query, top_k=args.results, conversation_id=args.conversation))
    if not hits:
        print("  Nothing found.")
        return

    for i, hit in enumerate(hits, 1):
        content = hit.content
        if len(content) > 200:
            content = content[:200] + "..."
        print(f"\n  [{i}] {hit.role.upper()} | score: {hit.score:.3f} | {hit.conversation_title or 'Untitled Chat'}")
        print(f"      conv: {hit.conversation_id[:16]}")
        print(f"      {content}")


def cmd_ring(args):
    """Ping a running chatgate instance."""
    import httpx

    url = (args.url or "http://localhost:8080").rstrip("/")
    try:
        resp = httpx.get(f"{url}/api/v1/health", timeout=5)
        if resp.status_code != 200:
            print(f"  ✗  No answer — got HTTP {resp.status_code}")
            return
        print(f"  ✓  {url} is UP (v{resp.json().get('version', '?')})")
        stats = httpx.get(f"{url}/api/v1/stats", timeout=5).json()
        rl = stats.get("rate_limit", {})
        vec = stats.get("vector", {})
        tools = stats.get("tools", [])
        print(f"  Connections:   {stats.get('connections', 0)}")
        print(f"  Tracked users: {rl.get('tracked_users', 0)}")
        print(f"  Embeddings:    {vec.get('total_embeddings', 0)}")
        print(f"  Tools:         {', '.join(tools) if tools else 'none'}")
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")


def cmd_flash(args):
    """Show config at a glance."""
    from chatgate.config import section

    backend = section("backend")
    embedding = section("embedding")
    storage = section("storage")
    rl = section("rate_limit")
    att = section("attachments")
    gw = section("gateway")

    print(f"  chatgate v{__version__}")
    print()
    print("  Model")
    print(f"  ├─ Provider:  {backend.get('provider', 'gemini')}")
    print(f"  ├─ Model:     {backend.get('model', '?')}")
    print(f"  ├─ API key:   {'set' if backend.get('api_key') else 'missing'}")
    print(f"  └─ Timeout:   {gw.get('timeout', backend.get('timeout', 60))}s")
    print()
    print("  Memory")
    print(f"  ├─ Embedder:  {embedding.get('provider', 'gemini')} / {embedding.get('model', '?')}")
    print(f"  ├─ Backend:   {storage.get('vector_backend', 'chromadb')}")
    print(f"  └─ Path:      {storage.get('chroma_path', './data/chroma')}")
    print()
    print("  Limits")
    print(f"  ├─ Messages:  {rl.get('per_minute', 60)}/min, {rl.get('per_hour', 500)}/hour")
    print(f"  ├─ Files:     {att.get('max_count', 5)} per message")
    print(f"  └─ Reply:     {gw.get('max_response_chars', 50000)} chars, {gw.get('max_tool_calls', 5)} tool calls")

    tools = section("tools")
    enabled = [
        name for name, opts in tools.items()
        if name != "google_search" and isinstance(opts, dict) and opts.get("enabled", True)
    ]
    print()
    print("  Tools")
    print(f"  └─ {', '.join(enabled) if enabled else 'none enabled'}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def main():
    parser = argparse.ArgumentParser(
        prog="chatgate",
        description="chatgate — real-time chat gateway.",
        epilog="Run 'chatgate <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatgate {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"], "Start the chat gateway server", cmd_serve, setup_serve)

    def setup_search(p):
        p.add_argument("user", help="User id whose memory to search")
        p.add_argument("query", nargs="+", help="Search query")
        p.add_argument("--results", "-n", type=int, default=5, help="Number of results")
        p.add_argument("--conversation", "-c", default=None, help="Restrict to one conversation")

    _add_command(sub, ["search", "recall"], "Semantic search over one user's memory", cmd_search, setup_search)

    def setup_ring(p):
        p.add_argument("--url", "-u", default=None, help="chatgate URL (default: http://localhost:8080)")

    _add_command(sub, ["ring", "status", "ping"], "Ping a running instance", cmd_ring, setup_ring)

    _add_command(sub, ["flash", "info", "config"], "Show config at a glance", cmd_flash)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
