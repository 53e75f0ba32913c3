"""
Terminal crew client.

    python play.py --name Ishim [--room MAIN] [--relay ws://127.0.0.1:8000]

Lobby: type to chat, /start (host only) to begin.
Running: type an answer to submit it, /say <text> to chat, /hint, /who.
Anywhere: /restart, /quit.
"""
import argparse
import asyncio
import logging

from config import settings
from agents.countdown import format_clock
from agents.crew_session import CrewSession, NotHostError
from models.room import SessionPhase
from services.ai_client import HttpNarrator
from services.realtime import (
    ChannelStateError,
    PresenceTrackError,
    RealtimeClient,
    TransportConnectError,
    websocket_link_factory,
)

logger = logging.getLogger(__name__)


class ConsoleView:
    """Prints whatever is new in the session since the last refresh."""

    def __init__(self, session: CrewSession):
        self.session = session
        self._lines = 0
        self._tries = 0
        self._phase = None
        self._puzzle = None
        self._members = None

    def refresh(self) -> None:
        s = self.session
        names = tuple(m.display_name for m in s.members)
        if names != self._members:
            self._members = names
            host = s.host.display_name if s.host else "-"
            print(f"[crew] {', '.join(names) or '(nobody)'}  host: {host}")
        for entry in s.transcript[self._lines:]:
            print(f"<{entry.speaker or entry.role}> {entry.text}")
        self._lines = len(s.transcript)
        for attempt in s.tries[self._tries:]:
            print(f"[try] {attempt.nick}: {attempt.answer}")
        self._tries = len(s.tries)
        if s.phase != self._phase or s.puzzle_index != self._puzzle:
            self._phase, self._puzzle = s.phase, s.puzzle_index
            if s.phase == SessionPhase.RUNNING and s.current_puzzle:
                p = s.current_puzzle
                print(f"\n== {p.title} [{s.puzzle_index + 1}/{len(s.engine)}] ==\n{p.prompt}\n")
            elif s.phase == SessionPhase.WON:
                print(f"\n*** ESCAPED with {format_clock(s.seconds_left or 0)} left ***")
            elif s.phase == SessionPhase.LOST:
                print("\n*** GAME OVER: the timer ran out ***")


async def _read_line(prompt: str = "") -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, input, prompt)


async def _refresher(view: ConsoleView) -> None:
    while True:
        view.refresh()
        await asyncio.sleep(0.5)


async def _join(session: CrewSession, name: str) -> bool:
    try:
        await session.join(name)
        return True
    except TransportConnectError as exc:
        print(f"Could not reach the relay: {exc.reason}. Try again with /restart.")
    except PresenceTrackError as exc:
        print(f"Joined but could not announce presence ({exc}). Retrying once...")
        try:
            await session.retry_presence()
            return True
        except PresenceTrackError:
            print("Still invisible to the crew. Use /restart to rejoin.")
    return False


async def _act(session: CrewSession, line: str) -> None:
    if line.startswith("/say "):
        await session.say(line[5:])
    elif session.phase == SessionPhase.RUNNING:
        result = await session.submit(line)
        print("Accepted!" if result.accepted else "Rejected.")
    else:
        await session.say(line)


async def run(name: str, room: str, relay: str, narrator_url: str) -> None:
    session = CrewSession(
        RealtimeClient(websocket_link_factory(relay)),
        narrator=HttpNarrator(narrator_url),
        room_id=room,
    )
    view = ConsoleView(session)
    await _join(session, name)
    refresher = asyncio.create_task(_refresher(view))
    try:
        while True:
            line = (await _read_line()).strip()
            if not line:
                continue
            if line == "/quit":
                break
            if line == "/restart":
                await session.restart()
                view = ConsoleView(session)
                refresher.cancel()
                refresher = asyncio.create_task(_refresher(view))
                await _join(session, name)
                continue
            if session.channel is None or session.disconnected:
                print("Not connected. /restart to try again.")
                continue
            if line == "/who":
                view._members = None
            elif line == "/start":
                try:
                    if not await session.start():
                        print("Cannot start right now.")
                except NotHostError:
                    print("Only the host can start the run.")
            elif line == "/hint":
                scheduled = session.hint()
                if scheduled:
                    print(f"[hint] {scheduled}")
                reply = await session.ask_hint()
                print(reply or "AI-Zeta: No active system to help with.")
                print(f"[hints used: {session.hints_used}]")
            else:
                try:
                    await _act(session, line)
                except ChannelStateError as exc:
                    print(f"Not sent: {exc}.")
            view.refresh()
    finally:
        refresher.cancel()
        await session.restart()


def main() -> None:
    parser = argparse.ArgumentParser(description="Aether Station crew client")
    parser.add_argument("--name", default="")
    parser.add_argument("--room", default=settings.room_id)
    parser.add_argument("--relay", default=settings.relay_url)
    parser.add_argument("--narrator", default=settings.narrator_url)
    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.WARNING)
    try:
        asyncio.run(run(args.name, args.room, args.relay, args.narrator))
    except (KeyboardInterrupt, EOFError):
        pass


if __name__ == "__main__":
    main()
