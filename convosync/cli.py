"""
ConvoSync CLI — manage the local conversation store and sync it between devices.

Commands:
  convosync list                 - Show ideas, branches and counts
  convosync idea create|rename|delete
  convosync branch create|rename|delete|merge
  convosync bind merge|pin       - Consolidate binds onto a branch, toggle pins
  convosync snapshot             - Checkpoint a branch
  convosync send --via KIND      - Send the whole store (relay, qr, ble, p2p)
  convosync receive --via KIND   - Receive a payload and merge it
  convosync peer                 - Stay in a P2P room, syncing with every peer that joins
  convosync signaling serve      - Run a signaling server for P2P rooms
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

from convosync.transports import TRANSPORT_KINDS


def _config(args: argparse.Namespace) -> dict[str, Any]:
    from convosync.config import load_config

    config = load_config(getattr(args, "config", None))
    if getattr(args, "data_dir", None):
        config["data_dir"] = args.data_dir
    return config


def _repository(args: argparse.Namespace):
    from convosync.store import ConversationRepository

    return ConversationRepository(_config(args)["data_dir"])


def _coordinator(args: argparse.Namespace, config: dict[str, Any]):
    from convosync.coordinator import SyncCoordinator
    from convosync.settings import SettingsStore
    from convosync.store import ConversationRepository

    return SyncCoordinator(
        ConversationRepository(config["data_dir"]),
        settings_store=SettingsStore(config["settings_path"]),
    )


def _fail(message: Any) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Store commands
# ---------------------------------------------------------------------------

def cmd_list(args: argparse.Namespace) -> None:
    """List ideas with their branches."""
    repo = _repository(args)
    ideas = repo.list_ideas()
    if not ideas:
        print("No ideas yet.")
        return

    print(f"{len(ideas)} idea(s)\n")
    for idea in ideas:
        pin = " [pinned]" if idea.pinned else ""
        print(f"{idea.name}{pin}  ({idea.id})")
        for branch in repo.get_idea_branches(idea.id):
            binds = repo.get_branch_binds(branch.id)
            parent = f"  <- {branch.parent_id}" if branch.parent_id else ""
            merged = " [merged]" if branch.is_merged else ""
            print(f"  {branch.name}{merged}  {branch.id}  "
                  f"{len(branch.messages)} msg(s), {len(binds)} bind(s){parent}")


def cmd_idea_create(args: argparse.Namespace) -> None:
    repo = _repository(args)
    idea = repo.create_idea(args.name, args.description or "")
    print(f"Created idea {idea.id}")


def cmd_idea_rename(args: argparse.Namespace) -> None:
    from convosync.store import NotFoundError

    try:
        _repository(args).update_idea(args.idea_id, name=args.name)
    except NotFoundError as e:
        _fail(e)
    print(f"Renamed idea {args.idea_id}")


def cmd_idea_delete(args: argparse.Namespace) -> None:
    from convosync.store import NotFoundError

    try:
        _repository(args).delete_idea(args.idea_id)
    except NotFoundError as e:
        _fail(e)
    print(f"Deleted idea {args.idea_id}")


def cmd_branch_create(args: argparse.Namespace) -> None:
    from convosync.store import NotFoundError

    try:
        branch = _repository(args).create_branch(args.name, args.idea_id, parent_id=args.parent)
    except (NotFoundError, ValueError) as e:
        _fail(e)
    print(f"Created branch {branch.id}")


def cmd_branch_rename(args: argparse.Namespace) -> None:
    from convosync.store import NotFoundError

    try:
        _repository(args).rename_branch(args.branch_id, args.name)
    except NotFoundError as e:
        _fail(e)
    print(f"Renamed branch {args.branch_id}")


def cmd_branch_delete(args: argparse.Namespace) -> None:
    from convosync.store import NotFoundError

    try:
        deleted = _repository(args).delete_branch(args.branch_id)
    except NotFoundError as e:
        _fail(e)
    print(f"Deleted {len(deleted)} branch(es)")


def cmd_branch_merge(args: argparse.Namespace) -> None:
    from convosync.store import NotFoundError

    try:
        merged = _repository(args).merge_branches(args.source, args.target)
    except (NotFoundError, ValueError) as e:
        _fail(e)
    print(f"Created merged branch {merged.id} ({merged.name})")


def cmd_bind_merge(args: argparse.Namespace) -> None:
    from convosync.merge import MergeEngine
    from convosync.store import NotFoundError

    engine = MergeEngine(_repository(args))
    try:
        branch = engine.merge_selected_binds(args.bind_ids, args.target, args.new_branch)
    except NotFoundError as e:
        _fail(e)
    print(f"Merged {len(args.bind_ids)} bind(s) into {branch.name} ({branch.id})")


def cmd_bind_pin(args: argparse.Namespace) -> None:
    from convosync.store import NotFoundError

    try:
        pinned = _repository(args).toggle_bind_pin(args.bind_id)
    except NotFoundError as e:
        _fail(e)
    print(f"Bind {args.bind_id} {'pinned' if pinned else 'unpinned'}")


def cmd_snapshot(args: argparse.Namespace) -> None:
    from convosync.store import NotFoundError

    try:
        snapshot = _repository(args).create_snapshot(args.branch_id, description=args.description)
    except NotFoundError as e:
        _fail(e)
    print(f"Created snapshot {snapshot.id} ({len(snapshot.messages)} message(s))")


# ---------------------------------------------------------------------------
# Sync commands
# ---------------------------------------------------------------------------

def _transport(args: argparse.Namespace, config: dict[str, Any]):
    from convosync.transports import build_transport

    kwargs: dict[str, Any] = {}
    if args.via == "qr" and getattr(args, "window", False):
        from convosync.transports.qr import WindowQRSurface
        kwargs["surface_factory"] = WindowQRSurface
    transport = build_transport(args.via, config, **kwargs)
    if not transport.is_available():
        _fail(f"The {args.via} transport is not available here (missing library or device backend)")
    return transport


def _options(args: argparse.Namespace) -> dict[str, Any]:
    options: dict[str, Any] = {}
    for key in ("path", "address", "cycles", "room_id"):
        value = getattr(args, key, None)
        if value is not None:
            options[key] = value
    return options


def _print_progress(event) -> None:
    total = f"/{event.total}" if event.total else ""
    print(f"\r  {event.direction} {event.index}{total}", end="", flush=True)


async def _send(args: argparse.Namespace) -> None:
    config = _config(args)
    coordinator = _coordinator(args, config)
    transport = _transport(args, config)
    coordinator.on("progress", _print_progress)
    try:
        if args.via == "p2p":
            room = await coordinator.connect_peer(transport, args.room_id)
            print(f"Room: {room}  (receiver runs: convosync receive --via p2p {room})")
            handle = await coordinator.sync_now()
        else:
            handle = await coordinator.start_sending(transport, _options(args))
            if handle.code:
                print(f"Code: {handle.code}  (receiver runs: convosync receive --via {args.via} {handle.code})")
        event = await handle.wait()
    finally:
        await coordinator.close()
        await transport.close()
    print()
    if event.error is not None:
        _fail(event.error)
    print("Cancelled." if event.cancelled else "Sent.")


async def _receive(args: argparse.Namespace) -> None:
    config = _config(args)
    coordinator = _coordinator(args, config)
    transport = _transport(args, config)
    coordinator.on("progress", _print_progress)
    try:
        handle = await coordinator.start_receiving(transport, args.code, _options(args))
        event = await handle.wait()
    finally:
        await coordinator.close()
        await transport.close()
    print()
    if event.error is not None:
        _fail(event.error)
    if coordinator.last_error is not None:
        _fail(coordinator.last_error)
    if event.cancelled:
        print("Cancelled.")
        return
    print(f"Merged: {coordinator.last_report.summary()}")


async def _peer(args: argparse.Namespace) -> None:
    from convosync.transports import build_transport

    config = _config(args)
    coordinator = _coordinator(args, config)
    transport = build_transport("p2p", config)
    coordinator.on("sync-applied", lambda report: print(f"Merged: {report.summary()}"))
    transport.on("peer-connected", lambda peer_id: print(f"Peer connected: {peer_id}"))
    transport.on("peer-disconnected", lambda peer_id: print(f"Peer left: {peer_id}"))
    try:
        room = await coordinator.connect_peer(transport, args.room_id)
        print(f"Room: {room}  (other devices run: convosync peer --room {room})")
        print("Press Ctrl-C to leave.")
        await asyncio.Event().wait()
    finally:
        await coordinator.close()


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        print("\nStopped.")


def cmd_send(args: argparse.Namespace) -> None:
    """Send the local store."""
    _run(_send(args))


def cmd_receive(args: argparse.Namespace) -> None:
    """Receive a payload and merge it into the local store."""
    _run(_receive(args))


def cmd_peer(args: argparse.Namespace) -> None:
    """Join a P2P room and keep syncing."""
    _run(_peer(args))


def cmd_signaling_serve(args: argparse.Namespace) -> None:
    """Run the signaling server in the foreground."""
    from convosync.transports.signaling import serve_forever

    print(f"Signaling server on ws://{args.host}:{args.port}")
    _run(serve_forever(args.host, args.port))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _dispatch(args: argparse.Namespace, group: str, attr: str, commands: dict, usage: str) -> None:
    name = getattr(args, attr, None)
    if not name:
        print(f"Usage: convosync {group} {{{usage}}}")
        sys.exit(0)
    commands[name](args)


def main(argv: list[str] | None = None) -> None:
    from convosync import SIGNALING_DEFAULT_PORT, __version__

    parser = argparse.ArgumentParser(
        prog="convosync",
        description="ConvoSync — sync branching conversations between devices.",
    )
    parser.add_argument("--version", action="version", version=f"convosync {__version__}")
    parser.add_argument("--config", help="Path to config.toml (default: ~/.convosync/config.toml)")
    parser.add_argument("--data-dir", help="Conversation store directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("list", help="List ideas and branches")

    # idea
    p_idea = sub.add_parser("idea", help="Manage ideas")
    idea_sub = p_idea.add_subparsers(dest="idea_command")
    p_ic = idea_sub.add_parser("create", help="Create an idea with a Main branch")
    p_ic.add_argument("name")
    p_ic.add_argument("-d", "--description")
    p_ir = idea_sub.add_parser("rename", help="Rename an idea")
    p_ir.add_argument("idea_id")
    p_ir.add_argument("name")
    p_id = idea_sub.add_parser("delete", help="Delete an idea and all its branches")
    p_id.add_argument("idea_id")

    # branch
    p_branch = sub.add_parser("branch", help="Manage branches")
    branch_sub = p_branch.add_subparsers(dest="branch_command")
    p_bc = branch_sub.add_parser("create", help="Create or fork a branch")
    p_bc.add_argument("idea_id")
    p_bc.add_argument("name")
    p_bc.add_argument("--parent", help="Fork from this branch (copies its history)")
    p_br = branch_sub.add_parser("rename", help="Rename a branch")
    p_br.add_argument("branch_id")
    p_br.add_argument("name")
    p_bd = branch_sub.add_parser("delete", help="Delete a branch and its descendants")
    p_bd.add_argument("branch_id")
    p_bm = branch_sub.add_parser("merge", help="Merge SOURCE into a new child of TARGET")
    p_bm.add_argument("source")
    p_bm.add_argument("target")

    # bind
    p_bind = sub.add_parser("bind", help="Manage binds")
    bind_sub = p_bind.add_subparsers(dest="bind_command")
    p_bdm = bind_sub.add_parser("merge", help="Copy binds onto a branch")
    p_bdm.add_argument("target", help="Target branch id")
    p_bdm.add_argument("bind_ids", nargs="+")
    p_bdm.add_argument("--new-branch", help="Create a new branch with this name under TARGET")
    p_bdp = bind_sub.add_parser("pin", help="Toggle a bind's pin")
    p_bdp.add_argument("bind_id")

    # snapshot
    p_snap = sub.add_parser("snapshot", help="Checkpoint a branch")
    p_snap.add_argument("branch_id")
    p_snap.add_argument("-d", "--description")

    # send / receive
    p_send = sub.add_parser("send", help="Send the local store to another device")
    p_send.add_argument("--via", choices=TRANSPORT_KINDS, default="relay")
    p_send.add_argument("--path", help="Relay path to use (default: random)")
    p_send.add_argument("--room", dest="room_id", help="P2P room id (default: new room)")
    p_send.add_argument("--address", help="BLE device address (default: first advertising device)")
    p_send.add_argument("--cycles", type=int, help="QR: stop after N passes (default: until Ctrl-C)")
    p_send.add_argument("--window", action="store_true", help="QR: show frames in a window")

    p_recv = sub.add_parser("receive", help="Receive from another device and merge")
    p_recv.add_argument("code", nargs="?", help="Relay path, P2P room id or BLE address")
    p_recv.add_argument("--via", choices=TRANSPORT_KINDS, default="relay")

    p_peer = sub.add_parser("peer", help="Stay in a P2P room and sync with every peer")
    p_peer.add_argument("--room", dest="room_id", help="Room id to join (default: new room)")

    # signaling
    p_sig = sub.add_parser("signaling", help="Signaling server for P2P rooms")
    sig_sub = p_sig.add_subparsers(dest="signaling_command")
    p_ss = sig_sub.add_parser("serve", help="Run the signaling server (foreground)")
    p_ss.add_argument("--host", default="127.0.0.1")
    p_ss.add_argument("--port", type=int, default=SIGNALING_DEFAULT_PORT)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    if not args.command:
        parser.print_help()
        sys.exit(0)

    if args.command == "idea":
        _dispatch(args, "idea", "idea_command", {
            "create": cmd_idea_create,
            "rename": cmd_idea_rename,
            "delete": cmd_idea_delete,
        }, "create|rename|delete")
        return

    if args.command == "branch":
        _dispatch(args, "branch", "branch_command", {
            "create": cmd_branch_create,
            "rename": cmd_branch_rename,
            "delete": cmd_branch_delete,
            "merge": cmd_branch_merge,
        }, "create|rename|delete|merge")
        return

    if args.command == "bind":
        _dispatch(args, "bind", "bind_command", {
            "merge": cmd_bind_merge,
            "pin": cmd_bind_pin,
        }, "merge|pin")
        return

    if args.command == "signaling":
        _dispatch(args, "signaling", "signaling_command", {
            "serve": cmd_signaling_serve,
        }, "serve")
        return

    commands = {
        "list": cmd_list,
        "snapshot": cmd_snapshot,
        "send": cmd_send,
        "receive": cmd_receive,
        "peer": cmd_peer,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
