from __future__ import annotations

# Single-entrypoint runner.
#
#   python -m clinic_queue.app serve [--token T]          dispatch server
#   python -m clinic_queue.app kiosk --service admision   issue a ticket
#   python -m clinic_queue.app call-next --service admision --counter adm-1
#   python -m clinic_queue.app lookup A-014               mobile lookup
#   python -m clinic_queue.app admin-service vacunacion --active off
#   python -m clinic_queue.app generate --rate 0.5        demo arrivals
#
# `serve` and `generate` forward their remaining flags to the module's own
# parser. Every other subcommand sends one request and prints the reply.

import argparse
import json
from typing import Any, Callable

from .config import Settings, add_mqtt_args
from .errors import QueueError

# Exit status for retryable failures (EX_TEMPFAIL).
EXIT_RETRYABLE = 75


def _fmt_ticket(t: dict[str, Any]) -> str:
    parts = [t["code"], t["status"], f"service={t['service_id']}"]
    if t.get("triage"):
        parts.append(f"triage={t['triage']}")
    if t.get("preferente"):
        parts.append("preferente")
    if t.get("counter_id"):
        parts.append(f"counter={t['counter_id']}")
    parts.append(f"id={t['id']}")
    return " ".join(parts)


def build_parser(settings: Settings | None = None) -> argparse.ArgumentParser:
    s = settings or Settings.from_env()
    parser = argparse.ArgumentParser(description="Clinic queue dispatch (MQTT) - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)

    # Forwarded to their own module parsers.
    sub.add_parser("serve", help="Start the dispatch server", add_help=False)
    sub.add_parser("generate", help="Issue demo tickets with Poisson arrivals", add_help=False)

    def client_cmd(name: str, help_text: str, *, operator: bool = False) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        add_mqtt_args(p, s)
        if operator:
            p.add_argument("--token", default=s.operator_token)
        return p

    p = client_cmd("kiosk", "Issue a ticket")
    p.add_argument("--service", required=True)
    p.add_argument("--triage", default=None)
    p.add_argument("--preferente", action="store_true")
    p.add_argument("--doc", default=None, help="patient document reference")

    p = client_cmd("call-next", "Call the next ticket of a service", operator=True)
    p.add_argument("--service", required=True)
    p.add_argument("--counter", required=True)

    p = client_cmd("call", "Call a specific ticket", operator=True)
    p.add_argument("ticket_id")
    p.add_argument("--counter", required=True)

    for name, help_text in (
        ("start", "Start serving a called ticket"),
        ("finish", "Finish a ticket"),
        ("noshow", "Mark a called ticket as no-show"),
        ("recall", "Re-announce a called ticket"),
    ):
        p = client_cmd(name, help_text, operator=True)
        p.add_argument("ticket_id")

    p = client_cmd("transfer", "Move a ticket to another service", operator=True)
    p.add_argument("ticket_id")
    p.add_argument("--service", required=True)

    p = client_cmd("triage", "Set (or clear) the triage level", operator=True)
    p.add_argument("ticket_id")
    p.add_argument("level", nargs="?", default=None)

    p = client_cmd("preferente", "Set or toggle the preferente flag", operator=True)
    p.add_argument("ticket_id")
    p.add_argument("--value", choices=("on", "off"), default=None)

    p = client_cmd("note", "Set the clinical note", operator=True)
    p.add_argument("ticket_id")
    p.add_argument("text")

    for name, target, help_text in (
        ("admin-service", "service_id", "Rename, open or close a service"),
        ("admin-counter", "counter_id", "Rename, open or close a counter"),
    ):
        p = client_cmd(name, help_text, operator=True)
        p.add_argument(target)
        p.add_argument("--name", default=None)
        p.add_argument("--active", choices=("on", "off"), default=None)

    p = client_cmd("lookup", "Ticket status and queue position by code")
    p.add_argument("code")

    p = client_cmd("queue", "Show a service queue in dispatch order")
    p.add_argument("--service", required=True)
    p.add_argument("--all", action="store_true", help="include called/serving tickets")

    client_cmd("display", "Show the display board")

    p = client_cmd("events", "Show feed events after a revision")
    p.add_argument("--since", type=int, default=0)

    client_cmd("summary", "Show analytics summary")
    return parser


def _run_client_cmd(args: argparse.Namespace) -> None:
    from .client import connect

    client = connect(
        role="operator" if getattr(args, "token", None) is not None else args.cmd,
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        timeout=args.timeout,
        token=getattr(args, "token", "") or "",
    )
    commands: dict[str, Callable[[], None]] = {
        "kiosk": lambda: print(
            "[kiosk] ticket "
            + _fmt_ticket(
                client.create(args.service, triage=args.triage, preferente=args.preferente, doc_value=args.doc)
            )
        ),
        "call-next": lambda: print("[operator] called " + _fmt_ticket(client.call_next(args.service, args.counter))),
        "call": lambda: print("[operator] called " + _fmt_ticket(client.call_specific(args.ticket_id, args.counter))),
        "start": lambda: print("[operator] " + _fmt_ticket(client.start(args.ticket_id))),
        "finish": lambda: print("[operator] " + _fmt_ticket(client.finish(args.ticket_id))),
        "noshow": lambda: print("[operator] " + _fmt_ticket(client.no_show(args.ticket_id))),
        "recall": lambda: print("[operator] recalled " + _fmt_ticket(client.recall(args.ticket_id))),
        "transfer": lambda: print("[operator] " + _fmt_ticket(client.transfer(args.ticket_id, args.service))),
        "triage": lambda: print("[operator] " + _fmt_ticket(client.set_triage(args.ticket_id, args.level))),
        "preferente": lambda: print(
            "[operator] "
            + _fmt_ticket(
                client.set_preferente(args.ticket_id, _on_off(args.value))
            )
        ),
        "note": lambda: print("[operator] " + _fmt_ticket(client.set_note(args.ticket_id, args.text))),
        "admin-service": lambda: print(
            "[admin] service "
            + json.dumps(
                client.update_service(args.service_id, name=args.name, is_active=_on_off(args.active)),
                ensure_ascii=False,
            )
        ),
        "admin-counter": lambda: print(
            "[admin] counter "
            + json.dumps(
                client.update_counter(args.counter_id, name=args.name, is_active=_on_off(args.active)),
                ensure_ascii=False,
            )
        ),
        "lookup": lambda: _print_lookup(client.lookup(args.code)),
        "queue": lambda: _print_tickets(client.queue(args.service, include_active=args.all)),
        "display": lambda: print(json.dumps(client.display(), indent=2, ensure_ascii=False)),
        "events": lambda: print(json.dumps(client.events(args.since), indent=2, ensure_ascii=False)),
        "summary": lambda: print(json.dumps(client.summary(), indent=2, ensure_ascii=False)),
    }
    try:
        commands[args.cmd]()
    except QueueError as e:
        print(f"[{args.cmd}] error {e.code}: {e.message}")
        raise SystemExit(EXIT_RETRYABLE if e.retryable else 1) from None
    finally:
        client.transport.stop()


def _on_off(value: str | None) -> bool | None:
    return None if value is None else value == "on"


def _print_lookup(result: dict[str, Any]) -> None:
    t = result["ticket"]
    pos = result["position"]
    where = f"position {pos}" if pos else (f"counter {t['counter_id']}" if t.get("counter_id") else t["status"])
    wait = result.get("estimated_wait_seconds")
    if pos and wait is not None:
        where += f", ~{round(wait / 60)} min"
    print(f"[lookup] {t['code']} {t['status']} ({where})")


def _print_tickets(tickets: list[dict[str, Any]]) -> None:
    if not tickets:
        print("(empty)")
    for i, t in enumerate(tickets, start=1):
        print(f"{i:3d}. {_fmt_ticket(t)}")


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args, rest = parser.parse_known_args(argv)

    if args.cmd == "serve":
        from .server import main as run

        run(rest)
        return

    if args.cmd == "generate":
        from .generator import main as run

        run(rest)
        return

    if rest:
        parser.error(f"unrecognized arguments: {' '.join(rest)}")
    _run_client_cmd(args)


if __name__ == "__main__":
    main()
