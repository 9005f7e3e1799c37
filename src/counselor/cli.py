import argparse
import json
import os
import sys
import time

from .config import load_engine_config
from .constants import DEFAULT_EVENT_LOG_FILE
from .engine import build_engine
from .errors import CounselorError
from .models import EntryContext, EntryMode


def cmd_serve(args: argparse.Namespace) -> int:
    if args.port:
        os.environ["PORT"] = str(args.port)
    from .web_api import main as serve_main
    serve_main()
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    try:
        cfg = load_engine_config()
    except CounselorError as e:
        print(f"ERROR: {e}")
        return 1
    print(cfg.to_json())
    return 0


def _print_stream(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def cmd_chat(args: argparse.Namespace) -> int:
    engine = build_engine()
    first = True
    try:
        engine.on_login(args.student)
        while True:
            try:
                message = input("you> ").strip()
            except EOFError:
                break
            if not message:
                continue
            if message in ("/quit", "/exit"):
                break
            entry = EntryContext(
                mode=EntryMode(args.mode),
                trigger="cli",
                initial_query=message if first else None,
                is_new_user=args.new and first,
            )
            first = False
            sys.stdout.write("counselor> ")
            outcome = engine.chat(args.student, message, entry, on_delta=_print_stream if args.stream else None)
            if not outcome.ok:
                print(f"\n[{outcome.failure.value}] {outcome.user_message}")
                continue
            if not args.stream or outcome.reprompted or outcome.escalated:
                print(outcome.reply)
            else:
                print()
            if outcome.tool_report is not None:
                for r in outcome.tool_report.results:
                    print(f"  - {r.name}: {r.status.value}" + (f" ({r.error})" if r.error else ""))
    except KeyboardInterrupt:
        print()
    except CounselorError as e:
        print(f"ERROR: {e}")
        return 1
    finally:
        engine.end_conversation(args.student)
        engine.shutdown(wait=True)
    return 0


def tail_follow(path: str, event: str = None):
    try:
        with open(path, "r", encoding="utf-8") as f:
            f.seek(0, os.SEEK_END)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.25)
                    continue
                if event:
                    try:
                        if json.loads(line).get("event") != event:
                            continue
                    except json.JSONDecodeError:
                        continue
                sys.stdout.write(line)
                sys.stdout.flush()
    except KeyboardInterrupt:
        return


def cmd_tail(args: argparse.Namespace) -> int:
    cfg = load_engine_config()
    log_path = os.path.join(cfg.log_dir or ".", DEFAULT_EVENT_LOG_FILE)
    if not os.path.exists(log_path):
        print(f"No log file found: {log_path}")
        return 1
    if args.follow:
        tail_follow(log_path, args.event)
        return 0
    with open(log_path, "r", encoding="utf-8") as f:
        for line in f:
            if args.event:
                try:
                    if json.loads(line).get("event") != args.event:
                        continue
                except json.JSONDecodeError:
                    continue
            sys.stdout.write(line)
    sys.stdout.flush()
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="counselor", description="AI counselor orchestration engine")
    sub = p.add_subparsers(dest="cmd", required=True)

    ps = sub.add_parser("serve", help="Run the HTTP API (needs the serve extra)")
    ps.add_argument("--port", type=int, help="Port to listen on (default: $PORT or 8000)")
    ps.set_defaults(func=cmd_serve)

    pc = sub.add_parser("chat", help="Interactive chat session against the configured providers")
    pc.add_argument("--student", default="local-student", help="Student id for this session")
    pc.add_argument("--mode", default=EntryMode.GENERAL.value, choices=[m.value for m in EntryMode], help="Entry mode")
    pc.add_argument("--new", action="store_true", help="Treat the student as a first-time user")
    pc.add_argument("--stream", action="store_true", help="Stream reply text as it arrives")
    pc.set_defaults(func=cmd_chat)

    pg = sub.add_parser("config", help="Print the resolved configuration with secrets redacted")
    pg.set_defaults(func=cmd_config)

    pt = sub.add_parser("tail", help="Show the engine event log")
    pt.add_argument("--follow", "-f", action="store_true", help="Follow (tail -f) the log file")
    pt.add_argument("--event", "-e", help="Only show events with this name, e.g. provider_retry")
    pt.set_defaults(func=cmd_tail)

    return p


def main(argv=None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
