"""ChatStream - streaming Q&A client

Simple CLI for asking questions of the answer service.
"""

import argparse
import asyncio
import sys

from chatstream.config import settings
from chatstream.models.conversation import ConversationTurn, QueryMode, Role
from chatstream.services.citations import (
    CitationExpansion,
    citation_key,
    format_citation,
    render_turn,
    should_collapse,
)
from chatstream.services.session import CANCELLED_MESSAGE, StreamSessionController


class TerminalView:
    """Prints answer text as it streams in, then its references once settled."""

    def __init__(self, expansion: CitationExpansion, markdown: bool = False):
        self.expansion = expansion
        self.markdown = markdown
        self._printed: dict[int, int] = {}
        self._settled: set[int] = set()

    def __call__(self, turns: list[ConversationTurn]) -> None:
        for index, turn in enumerate(turns):
            if turn.role is not Role.ASSISTANT or index in self._settled:
                continue
            if turn.streaming:
                if not self.markdown:
                    self._print_delta(index, turn.content)
                continue

            self._settled.add(index)
            if self.markdown:
                print(f"\n{render_turn(turn, turn_index=index, expansion=self.expansion)}")
            elif turn.error:
                print(f"\n[!] {turn.content}")
            elif turn.content == CANCELLED_MESSAGE:
                print(f"\n[-] {turn.content}")
            else:
                self._print_delta(index, turn.content)
                print()
                self._print_citations(index, turn)

    def _print_delta(self, index: int, content: str) -> None:
        printed = self._printed.get(index, 0)
        if len(content) > printed:
            print(content[printed:], end="", flush=True)
            self._printed[index] = len(content)

    def _print_citations(self, index: int, turn: ConversationTurn) -> None:
        if not turn.citations:
            return
        print(f"\n[*] References ({len(turn.citations)}):")
        for position, citation in enumerate(turn.citations):
            key = citation_key(citation, index, position)
            expanded = self.expansion.is_expanded(key)
            print(f"  {format_citation(citation, position, expanded=expanded)}")
            if should_collapse(citation) and not expanded:
                print(f"    (/expand {key} shows the full quote)")


def print_history(controller: StreamSessionController, expansion: CitationExpansion) -> None:
    for index, turn in enumerate(controller.turns):
        speaker = "You" if turn.role is Role.USER else "AI"
        print(f"\n--- {speaker} ---")
        print(render_turn(turn, turn_index=index, expansion=expansion))


def toggle_citation(controller: StreamSessionController, expansion: CitationExpansion, key: str) -> bool:
    """Flip one quote between collapsed and full text, then reprint it."""
    for index, turn in enumerate(controller.turns):
        for position, citation in enumerate(turn.citations):
            if citation_key(citation, index, position) == key:
                expanded = expansion.toggle(key)
                print(f"  {format_citation(citation, position, expanded=expanded)}")
                return True
    return False


def handle_command(controller: StreamSessionController, expansion: CitationExpansion, line: str) -> bool:
    """Run one line of input. Returns False when the user asked to quit."""
    command, _, argument = line.strip().partition(" ")
    argument = argument.strip()
    if command in ("/quit", "/exit"):
        return False

    if command == "/cancel":
        if not controller.cancel():
            print("Nothing to cancel.")
    elif command == "/history":
        print_history(controller, expansion)
    elif command == "/expand":
        if not argument:
            print("Usage: /expand <key>")
        elif not toggle_citation(controller, expansion, argument):
            print(f"No citation with key {argument!r}.")
    else:
        # A new question replaces the answer still streaming, if any.
        controller.submit(line)
    return True


async def interactive(controller: StreamSessionController, expansion: CitationExpansion) -> None:
    print("Ask a question. Commands: /cancel, /history, /expand <key>, /quit")
    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            break
        if not handle_command(controller, expansion, line):
            break


async def run(args: argparse.Namespace) -> int:
    expansion = CitationExpansion(expand_all=args.expand_quotes)
    view = TerminalView(expansion, markdown=args.markdown)
    url = None
    if args.base_url:
        url = f"{args.base_url.rstrip('/')}/{settings.stream_path.lstrip('/')}"

    async with StreamSessionController(
        url=url,
        timeout_s=args.timeout,
        mode=args.mode,
        on_change=view,
    ) as controller:
        if args.query:
            turn = await controller.ask(args.query)
            return 1 if turn is None or turn.error else 0
        await interactive(controller, expansion)
    return 0


def main():
    parser = argparse.ArgumentParser(description="ChatStream streaming Q&A client")
    parser.add_argument("--query", "-q", help="Ask one question and exit")
    parser.add_argument(
        "--mode",
        "-m",
        choices=[mode.value for mode in QueryMode],
        help="Answer mode (default: from config)",
    )
    parser.add_argument("--base-url", help="API base URL (default: from config)")
    parser.add_argument("--timeout", type=float, help="Request deadline in seconds (default: from config)")
    parser.add_argument("--markdown", action="store_true", help="Print normalized Markdown once each answer settles")
    parser.add_argument("--expand-quotes", action="store_true", help="Show citation quotes in full")

    args = parser.parse_args()

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
