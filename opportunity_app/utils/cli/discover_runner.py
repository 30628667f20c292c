"""Command-line workflow for running discovery passes without a UI."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
from pathlib import Path
from typing import Any, Callable, List, Sequence

from dotenv import load_dotenv

from .. import envs
from ..cancellation import CancellationToken
from ..discovery import OpportunityDiscovery, create_discovery
from ..error_handling import attach_loop_handler
from ..errors import DataError, PassInProgressError
from ..log import log, read_tail
from ..models import LOOKBACK_WINDOWS, BreakoutDirection, DiscoveryResult

DEFAULT_SHOW = 10

_OVERRIDE_ENV = {
    "database_url": "OPPORTUNITY_DATABASE_URL",
    "exchange_url": "OPPORTUNITY_EXCHANGE_URL",
    "volume_days": "OPPORTUNITY_VOLUME_DAYS",
    "multiplier": "OPPORTUNITY_VOLUME_MULTIPLIER",
}


class DiscoverCLI:
    """Parses arguments, loads configuration and drives one or many passes."""

    def __init__(
        self,
        *,
        settings_loader: Callable[[bool], envs.Settings] = envs.get_settings,
        discovery_factory: Callable[[envs.Settings], OpportunityDiscovery] = create_discovery,
        logger: Callable[..., None] = log,
        printer: Callable[[str], None] = print,
        default_env_file: Path | None = None,
    ) -> None:
        self._settings_loader = settings_loader
        self._discovery_factory = discovery_factory
        self._logger = logger
        self._print = printer
        if default_env_file is None:
            default_env_file = Path(__file__).resolve().parents[3] / ".env"
        self._default_env_file = default_env_file

    # ------------------------------------------------------------------
    # configuration helpers
    def load_env_file(self, path: str | os.PathLike[str] | None) -> None:
        """Populate :mod:`os.environ` from a dotenv file without overriding it."""

        dotenv_path = self._default_env_file if path is None else Path(path).expanduser().resolve()
        if not dotenv_path.exists():
            if path is not None:
                self._logger("discover.env.missing", path=str(dotenv_path))
            return
        load_dotenv(dotenv_path, override=False)

    @staticmethod
    def apply_cli_overrides(args: argparse.Namespace) -> None:
        for attr, env_key in _OVERRIDE_ENV.items():
            value = getattr(args, attr, None)
            if value is not None:
                os.environ[env_key] = str(value)

    # ------------------------------------------------------------------
    # rendering
    @staticmethod
    def _percent(value: Any) -> str:
        return f"{float(value) * 100:.2f}%"

    def render_result(self, result: DiscoveryResult, *, show: int = DEFAULT_SHOW) -> List[str]:
        lines = [
            f"Pass {result.status.value} in {(result.finished_at - result.started_at).total_seconds():.1f}s",
        ]
        if result.error:
            lines.append(f"  error: {result.error}")
        for note in result.notes:
            lines.append(f"  note: {note}")
        if not result.ok:
            return lines

        for direction in BreakoutDirection:
            for window in LOOKBACK_WINDOWS:
                records = result.breakouts.get(direction, window)
                lines.append(f"{window}-day {direction.value.lower()} breakouts: {len(records)}")
                for record in records[:show]:
                    lines.append(
                        f"  {record.symbol:<12} {record.current_price} vs {record.reference_price}"
                        f" ({self._percent(record.break_percent)})"
                    )

        lines.append(f"Volume breakouts: {len(result.volume_breakouts)}")
        for volume in result.volume_breakouts[:show]:
            lines.append(
                f"  #{volume.rank:<3} {volume.symbol:<12} x{float(volume.multiplier):.2f}"
                f" change {self._percent(volume.change_percent)}"
            )

        for title, items in (("Top gainers", result.top_gainers), ("Top losers", result.top_losers)):
            lines.append(f"{title}: {len(items)}")
            for item in items[:show]:
                lines.append(
                    f"  #{item.rank:<3} {item.symbol:<12} {item.current_price}"
                    f" {self._percent(item.change_percent)}"
                )
        return lines

    def emit(self, result: DiscoveryResult, *, as_json: bool, show: int) -> None:
        if as_json:
            self._print(json.dumps(result.as_dict(), ensure_ascii=False, sort_keys=True))
            return
        for line in self.render_result(result, show=show):
            self._print(line)

    # ------------------------------------------------------------------
    # pass loop
    async def run_loop(
        self,
        discovery: OpportunityDiscovery,
        *,
        once: bool,
        interval: float,
        as_json: bool,
        show: int,
        token: CancellationToken,
    ) -> int:
        attach_loop_handler(asyncio.get_running_loop())
        exit_code = 0
        try:
            while True:
                try:
                    result = await discovery.run_pass(token)
                except PassInProgressError as exc:
                    self._logger("discover.pass.skipped", reason=str(exc))
                else:
                    self.emit(result, as_json=as_json, show=show)
                    exit_code = 0 if result.ok else 1
                if once or token.cancelled:
                    break
                await asyncio.sleep(interval)
                if token.cancelled:
                    break
        finally:
            await discovery.aclose()
        return exit_code

    def build_arg_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Find N-day range and volume breakouts on Binance USDT futures.",
        )
        parser.add_argument("--once", action="store_true", help="Run a single pass and exit.")
        parser.add_argument(
            "--interval",
            type=float,
            default=None,
            help="Seconds between passes (defaults to update_interval_seconds).",
        )
        parser.add_argument("--json", dest="as_json", action="store_true", help="Print results as JSON.")
        parser.add_argument("--show", type=int, default=DEFAULT_SHOW, help="Rows to print per list.")
        parser.add_argument("--database-url", dest="database_url", help="SQLAlchemy URL of the kline database.")
        parser.add_argument("--exchange-url", dest="exchange_url", help="Exchange REST base URL.")
        parser.add_argument("--volume-days", dest="volume_days", type=int, help="Trailing days for average volume.")
        parser.add_argument("--multiplier", type=float, help="Volume breakout multiplier threshold.")
        parser.add_argument("--env-file", help="Path to a .env file (default: repository .env).")
        parser.add_argument(
            "--no-env-file",
            action="store_true",
            help="Do not read variables from a .env file.",
        )
        parser.add_argument(
            "--tail-log",
            dest="tail_log",
            type=int,
            metavar="N",
            help="Print the last N event log records and exit.",
        )
        return parser

    def print_log_tail(self, count: int) -> int:
        for line in read_tail(count):
            self._print(line)
        return 0

    def main(self, argv: Sequence[str] | None = None) -> int:
        parser = self.build_arg_parser()
        args = parser.parse_args(argv)
        if args.tail_log is not None:
            return self.print_log_tail(args.tail_log)

        if not args.no_env_file:
            self.load_env_file(args.env_file)
        self.apply_cli_overrides(args)

        settings = self._settings_loader(True)
        interval = max(float(args.interval if args.interval is not None else settings.update_interval_seconds), 1.0)
        self._logger("discover.start", once=args.once, interval=interval, settings=settings.describe())

        try:
            discovery = self._discovery_factory(settings)
        except DataError as exc:
            self._print(f"Cannot start: {exc}")
            self._logger("discover.start.failed", err=str(exc))
            return 2

        token = CancellationToken()
        previous_handler = signal.getsignal(signal.SIGINT)

        def _on_interrupt(signum: int, frame: Any) -> None:
            if token.cancelled:
                signal.signal(signal.SIGINT, previous_handler)
                raise KeyboardInterrupt
            token.cancel("interrupted")
            self._print("Stopping after the current step... (Ctrl+C again to abort)")

        signal.signal(signal.SIGINT, _on_interrupt)
        try:
            return asyncio.run(
                self.run_loop(
                    discovery,
                    once=args.once,
                    interval=interval,
                    as_json=args.as_json,
                    show=max(0, args.show),
                    token=token,
                )
            )
        except KeyboardInterrupt:
            self._logger("discover.stop", reason="keyboard_interrupt")
            return 130
        finally:
            signal.signal(signal.SIGINT, previous_handler)


def main(argv: Sequence[str] | None = None) -> int:
    return DiscoverCLI().main(argv)
