"""Command line front end for the client queue engine.

Usage:
    python -m bulkgen run --cookie COOKIE --prompts prompts.txt [--count 2] [--prefix "oil painting,"]
    python -m bulkgen resume --cookie COOKIE
    python -m bulkgen retry --cookie COOKIE
    python -m bulkgen edit --id ITEM_ID --prompt "new text" [--regenerate --cookie COOKIE]
    python -m bulkgen status
    python -m bulkgen export --output images.zip
"""

from __future__ import annotations

import asyncio
import logging
from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .client_queue import ClientQueue
from .exceptions import GenerationError
from .models import AspectRatio, PromptStatus, ReferenceCategory, ReferenceImage
from .prompt_files import parse_prompt_file
from .queue_store import STATE_FILE_NAME, MediaStore, QueueStateStore
from .transport import ProxyTransport
from .utils import encode_media

logger = logging.getLogger("bulkgen")


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    parser = ArgumentParser(prog="bulkgen", description="Drive bulk image generation through the proxy server")
    parser.add_argument("--server", default="http://localhost:5000", help="Proxy base URL")
    parser.add_argument("--state-dir", type=Path, default=Path(".bulkgen"), help="Local queue state directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Build a new queue and drain it")
    run.add_argument("--cookie", required=True)
    run.add_argument("--prompts", type=Path, required=True, help="Text, JSON or CSV prompt file")
    run.add_argument("--count", type=int, default=1, help="Images per prompt")
    run.add_argument("--prefix", default="", help="Style prefix prepended to every prompt")
    run.add_argument("--aspect", default="16:9", help="1:1, 16:9, 9:16 or SQUARE/LANDSCAPE/PORTRAIT")
    run.add_argument(
        "--reference",
        action="append",
        default=[],
        metavar="CATEGORY=PATH[:CAPTION]",
        help="Reference image (SUBJECT, STYLE or SCENE); repeatable, 3 per category",
    )

    for name, help_text in (("resume", "Continue a saved queue"), ("retry", "Retry failed items of a saved queue")):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("--cookie", required=True)

    edit = sub.add_parser("edit", help="Rewrite the prompt of one saved item")
    edit.add_argument("--id", dest="item_id", required=True)
    edit.add_argument("--prompt", required=True)
    edit.add_argument("--regenerate", action="store_true", help="Generate the item again after saving")
    edit.add_argument("--cookie", default="")

    sub.add_parser("status", help="Show the saved queue")

    export = sub.add_parser("export", help="Write completed images into a ZIP archive")
    export.add_argument("--output", type=Path, required=True)

    return parser.parse_args(argv)


def parse_reference(value: str) -> ReferenceImage:
    category, _, rest = value.partition("=")
    path_text, _, caption = rest.partition(":")
    if not path_text:
        raise ValueError(f"Invalid reference {value!r}, expected CATEGORY=PATH[:CAPTION]")
    data = Path(path_text).read_bytes()
    return ReferenceImage(
        category=ReferenceCategory(category.strip().upper()),
        image=encode_media(data),
        caption=caption.strip() or None,
    )


def _print_event(event: str, payload: Dict[str, Any]) -> None:
    if event == "item-completed":
        print(f"  done   {payload['id']} ({payload['progress']}%)")
    elif event == "item-error":
        print(f"  error  {payload['id']}: {payload['error']}")
    elif event == "queue-paused":
        print(f"Paused ({payload.get('reason')}). Fix the cookie, then run 'retry' or 'resume'.")
    elif event == "credential-expired":
        print("Cookie expired. Paste a fresh cookie and run 'resume'.")
    elif event == "queue-finished":
        print(f"Finished: {payload['completed']} generated, {payload['failed']} failed of {payload['total']}")


def build_queue(args: Namespace, transport: ProxyTransport, cookie: str = "") -> ClientQueue:
    state_dir: Path = args.state_dir
    state_dir.mkdir(parents=True, exist_ok=True)
    references: List[ReferenceImage] = [parse_reference(value) for value in getattr(args, "reference", [])]
    return ClientQueue(
        transport,
        cookie=cookie,
        state_store=QueueStateStore(state_dir / STATE_FILE_NAME),
        media_store=MediaStore(state_dir / "images"),
        aspect_ratio=AspectRatio.parse(getattr(args, "aspect", None) or "16:9"),
        references=references,
        on_event=_print_event,
    )


async def _drive(queue: ClientQueue) -> None:
    try:
        await queue.join()
    except asyncio.CancelledError:
        queue.cancel()
        raise
    finally:
        await queue.save_now()
        await queue.close()


async def async_main(args: Namespace) -> int:
    async with ProxyTransport(args.server) as transport:
        queue = build_queue(args, transport, getattr(args, "cookie", ""))

        if args.command == "run":
            prompts = parse_prompt_file(args.prompts.name, args.prompts.read_bytes())
            info = await queue.validate_cookie()
            if not info.valid:
                print(f"Cookie rejected: {info.message}")
                return 1
            await queue.start(prompts, args.count, args.prefix)
            print(f"Started: {queue.total_count} images")
            await _drive(queue)
            return 0 if queue.failed_count == 0 else 2

        restored = await queue.restore()
        if not restored:
            print("No saved queue found")
            return 1

        if args.command == "status":
            print(
                f"{queue.completed_count} of {queue.total_count} completed"
                + (f", {queue.failed_count} failed" if queue.failed_count else "")
            )
            for item in queue.items:
                print(f"  {item.status.value:<10} {item.id}  {item.prompt}")
            return 0

        if args.command == "edit":
            if args.regenerate and not args.cookie:
                print("A cookie is required to regenerate")
                return 1
            item = await queue.edit_item(args.item_id, args.prompt, regenerate=args.regenerate)
            await queue.save_now()
            await queue.close()
            print(f"  {item.status.value:<10} {item.id}  {item.prompt}")
            return 0 if item.status is not PromptStatus.error else 2

        if args.command == "export":
            added = await queue.export_zip(args.output)
            print(f"ZIP written ({added} images): {args.output}")
            return 0

        if args.command == "retry":
            if queue.retry_errors() == 0:
                print("No errors to retry")
                return 0
        elif queue.resume_restored() is None:
            print("Nothing left to generate")
            return 0
        await _drive(queue)
        return 0 if queue.failed_count == 0 else 2


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        return asyncio.run(async_main(args))
    except KeyboardInterrupt:
        print("Stopped; progress saved. Run 'resume' to continue.")
        return 130
    except KeyError as exc:
        logger.error("No queue item %s", exc)
        return 1
    except (GenerationError, ValueError, OSError) as exc:
        logger.error("%s", exc)
        return 1
