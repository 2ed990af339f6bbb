#!/usr/bin/env python3
"""
Order Intake Assistant CLI

Purpose
-------
Inspect reviewed order line items stored locally and drive the patch engine
against them, either one instruction at a time or as a conversation.

Top-level entrypoints
---------------------
- orders list
- show --order ID [--fields a,b]
- ask  --order ID --text "MESSAGE" [--ids ID ...] [--allow-questions] [--json]
- chat --order ID [--allow-questions]

Global option: --root DIR (default: $ORDER_STORE_ROOT or ./local_store)

In-session slash commands
-------------------------
(available only after `chat` starts on an order)

- /help
    Show available commands.

- /undo [session_id]
    Revert a change. Without an id, reverts the most recent change of this
    session that has not been undone yet.

- /questions on|off
    Toggle question mode (analytical questions are answered instead of
    prompting to opt in).

- /select id,id,... | all
    Restrict the following turns to a selection of line items.

- /show
    Print the (selected) line items.

- /quit
    Exit the chat session.

Notes
-----
- Every turn is appended to orders/<id>/turn_log.jsonl. Failed turns carry a
  one-line "error" summary (code, origin, retryable, correlation id).
- The conversation history kept by the CLI is passed to the engine each
  turn so confirmations ("yes, do it") resolve against the previous reply.
"""

from __future__ import annotations
import argparse, json, os, sys
from typing import List, Optional, Sequence

from patch_engine.catalog import build_catalog_guide
from patch_engine.dialogue_engine import PatchEngine
from patch_engine.error_handler import EngineConfigError, PatchEngineError, error_from_exception, summarize_for_log
from patch_engine.records import DialogueTurn, Record, TurnRequest, TurnResult
from patch_engine.session_ledger import SessionLedger
from patch_engine.store import LocalRecordStore

# ---------------- utils ----------------

def _store(args) -> LocalRecordStore:
    return LocalRecordStore(args.root or os.getenv("ORDER_STORE_ROOT", "local_store"))

def _open_engine(store: LocalRecordStore, order: str, *, ledger: Optional[SessionLedger] = None) -> PatchEngine:
    schema = store.fetch_schema(order)
    guide = build_catalog_guide(store.read_catalog(order), schema)
    return PatchEngine(
        store.working_set(order),
        schema,
        scope_id=order,
        ledger=ledger,
        catalog_guide=guide,
    )

def _split_ids(raw: Optional[Sequence[str]]) -> Optional[List[str]]:
    if not raw:
        return None
    out: List[str] = []
    for chunk in raw:
        out.extend(x.strip() for x in chunk.split(",") if x.strip())
    return out or None

def _fmt_record(r: Record, fields: Optional[Sequence[str]] = None) -> str:
    data = r.data if not fields else {k: r.data.get(k) for k in fields}
    cells = ", ".join(f"{k}={v}" for k, v in data.items())
    return f"{r.id:>8} | {cells}"

def _render_result(result: TurnResult) -> str:
    lines = [result.summary]
    if result.answer:
        lines.append(result.answer)
    if result.clarification:
        lines.append(result.clarification)
    if result.status == "recalculate":
        fields = ", ".join(result.recalculate_fields or []) or "(all computed fields)"
        lines.append(f"Fields to regenerate: {fields}")
        if result.matching_ids is not None:
            lines.append(f"Matching items: {', '.join(result.matching_ids) or '(none)'}")
    if result.session_id:
        for p in result.patches:
            changes = ", ".join(f"{k}: {p.previous.get(k)!r} → {v!r}" for k, v in p.updates.items())
            lines.append(f"  {p.id}: {changes}")
        lines.append(f"(undo with /undo {result.session_id})")
    if result.trigger_regeneration and result.status == "success":
        lines.append("Note: computed fields depend on what changed; regenerate them.")
    return "\n".join(lines)

def _log_error(store: LocalRecordStore, order: str, exc: PatchEngineError, packet: dict) -> dict:
    err = error_from_exception(exc, correlation_id=exc.details.get("correlation_id"), context={"scope": order})
    store.append_turn_log(order, {**packet, "error": summarize_for_log(err)})
    return err

def _report_error(exc: PatchEngineError, store: LocalRecordStore, order: str, packet: dict) -> int:
    err = _log_error(store, order, exc, packet)
    print(err["user_message"], file=sys.stderr)
    return 2 if isinstance(exc, EngineConfigError) else 1

def _print_chat_help():
    print(
        "Commands:\n"
        "  /help                        Show this help\n"
        "  /undo [session_id]           Revert the last (or the given) change\n"
        "  /questions on|off            Toggle question mode\n"
        "  /select id,id,... | all      Restrict turns to a selection of items\n"
        "  /show                        Print the (selected) items\n"
        "  /quit                        Exit\n"
        "Anything else is sent to the assistant as an instruction.\n"
    )

# ---------------- orders ----------------

def cmd_orders_list(args):
    store = _store(args)
    rows = store.list_orders()
    if not rows:
        print("No orders.")
        return 0
    for r in rows:
        print(f"{r['order_id']:>10} | {r['item_count']:>5} items | {r.get('last_turn_at','')}")
    return 0

def cmd_show(args):
    store = _store(args)
    try:
        records = store.read_items(args.order)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 2
    fields = [f.strip() for f in args.fields.split(",")] if args.fields else None
    for r in records:
        print(_fmt_record(r, fields))
    return 0

# ---------------- ask / chat ----------------

def cmd_ask(args):
    store = _store(args)
    try:
        engine = _open_engine(store, args.order)
        result = engine.handle_turn(TurnRequest(
            instruction=args.text,
            record_ids=_split_ids(args.ids),
            allow_questions=True if args.allow_questions else None,
        ))
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr); return 2
    except PatchEngineError as e:
        return _report_error(e, store, args.order, {"instruction": args.text})

    store.append_turn_log(args.order, {"instruction": args.text, **result.model_dump(mode="json", exclude={"items"})})
    if args.json:
        print(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
    else:
        print(_render_result(result))
    return 0

def cmd_chat(args):
    store = _store(args)
    try:
        engine = _open_engine(store, args.order)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr); return 2
    except PatchEngineError as e:
        return _report_error(e, store, args.order, {"chat": "start"})

    history: List[DialogueTurn] = []
    sessions: List[str] = []
    selection: Optional[List[str]] = None
    allow_questions = bool(args.allow_questions)

    print(f"Chatting on order {args.order}. Type '/help' for commands.")
    while True:
        try:
            line = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print(); break
        if not line:
            continue

        if line.startswith("/"):
            cmd = line[1:].strip().split(" ", 1)
            name = cmd[0].lower()
            arg = cmd[1].strip() if len(cmd) > 1 else ""

            if name == "quit":
                break

            elif name == "help":
                _print_chat_help()
                continue

            elif name == "undo":
                target = arg or (sessions[-1] if sessions else "")
                if not target:
                    print("Nothing to undo."); continue
                try:
                    res = engine.undo(target)
                except PatchEngineError as e:
                    print(_log_error(store, args.order, e, {"undo": target})["user_message"]); continue
                if target in sessions:
                    sessions.remove(target)
                store.append_turn_log(args.order, {"undo": res.session_id, "summary": res.summary})
                print(res.summary)
                continue

            elif name == "questions":
                if arg.lower() not in {"on", "off"}:
                    print("usage: /questions on|off"); continue
                allow_questions = arg.lower() == "on"
                print(f"(question mode {'on' if allow_questions else 'off'})")
                continue

            elif name == "select":
                if not arg:
                    print("usage: /select id,id,... | all"); continue
                selection = None if arg.lower() == "all" else _split_ids([arg])
                print(f"(selection) {', '.join(selection) if selection else 'all items'}")
                continue

            elif name == "show":
                for r in engine.store.fetch(selection):
                    print(_fmt_record(r))
                continue

            else:
                print("Unknown command. Type /help for options.")
                continue

        # Natural language fall-through
        try:
            result = engine.handle_turn(TurnRequest(
                instruction=line,
                record_ids=selection,
                conversation_history=list(history),
                allow_questions=allow_questions,
            ))
        except PatchEngineError as e:
            print(_log_error(store, args.order, e, {"instruction": line})["user_message"])
            continue

        reply = _render_result(result)
        print(reply)
        store.append_turn_log(args.order, {"instruction": line, **result.model_dump(mode="json", exclude={"items"})})
        if result.session_id:
            sessions.append(result.session_id)
        history.append(DialogueTurn(role="user", content=line))
        history.append(DialogueTurn(role="assistant", content=result.answer or result.clarification or result.summary))

    return 0

# ---------------- parser ----------------

def build_parser():
    p = argparse.ArgumentParser(prog="order-intake")
    p.add_argument("--root", help="local store root (default: $ORDER_STORE_ROOT or ./local_store)")
    sub = p.add_subparsers(dest="cmd")

    # orders
    p_orders = sub.add_parser("orders", help="working sets (local)")
    sub_orders = p_orders.add_subparsers(dest="sub")
    po_list = sub_orders.add_parser("list", help="list orders")
    po_list.set_defaults(func=cmd_orders_list)

    # show
    p_show = sub.add_parser("show", help="print an order's line items")
    p_show.add_argument("--order", required=True)
    p_show.add_argument("--fields", help="comma-separated field keys")
    p_show.set_defaults(func=cmd_show)

    # ask
    p_ask = sub.add_parser("ask", help="one-shot instruction for an order")
    p_ask.add_argument("--order", required=True)
    p_ask.add_argument("--text", required=True)
    p_ask.add_argument("--ids", action="append", help="restrict to item ids (comma-separated, repeatable)")
    p_ask.add_argument("--allow-questions", action="store_true")
    p_ask.add_argument("--json", action="store_true")
    p_ask.set_defaults(func=cmd_ask)

    # chat
    p_chat = sub.add_parser("chat", help="interactive chat for an order")
    p_chat.add_argument("--order", required=True)
    p_chat.add_argument("--allow-questions", action="store_true")
    p_chat.set_defaults(func=cmd_chat)

    return p

def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "cmd", None):
        parser.print_help()
        return 0
    if args.cmd == "orders" and not getattr(args, "sub", None):
        parser.parse_args(["orders", "-h"])
        return 0
    return args.func(args)

if __name__ == "__main__":
    raise SystemExit(main())
