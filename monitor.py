import os
import sqlite3
import time
from contextlib import closing
from datetime import datetime, timezone

from dotenv import load_dotenv
from rich.live import Live
from rich.table import Table
from rich.layout import Layout
from rich.panel import Panel
from rich import box

load_dotenv()

DB_PATH = os.getenv("DATABASE_PATH") or "data/apex_sniper.db"
REFRESH_SECONDS = 2


def load_positions(db_path):
    with closing(sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)) as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            "SELECT * FROM positions WHERE status IN ('open', 'partial') ORDER BY created_at"
        ).fetchall()
        return [dict(r) for r in rows]


def _age(created_at):
    try:
        opened = datetime.fromisoformat(created_at)
    except (TypeError, ValueError):
        return "-"
    seconds = int((datetime.now(timezone.utc) - opened).total_seconds())
    if seconds >= 3600:
        return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"
    return f"{seconds // 60}m{seconds % 60:02d}s"


def get_positions_table(positions):
    table = Table(box=box.ROUNDED, expand=True)
    table.add_column("ID", justify="right")
    table.add_column("User", style="cyan", no_wrap=True)
    table.add_column("Token", style="cyan", no_wrap=True)
    table.add_column("Mode", style="magenta")
    table.add_column("Status")
    table.add_column("Held / Bought", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Current", justify="right")
    table.add_column("PnL %", justify="right")
    table.add_column("TP", justify="center")
    table.add_column("Age", justify="right")

    if not positions:
        table.add_row(*["-"] * 11)
        return table

    for p in positions:
        pnl_pct = p.get("unrealized_pnl_percent") or 0.0
        if pnl_pct > 0:
            pnl_style = "green"
        elif pnl_pct < -10:
            pnl_style = "bold red"
        else:
            pnl_style = "red"

        flags = "".join("x" if p.get(f"bracket_{i}_hit") else "." for i in (1, 2, 3))
        token = p.get("token_symbol") or f"{p['token_id'][:6]}..."

        table.add_row(
            str(p["id"]),
            p["user_id"],
            token,
            p["mode"],
            p["status"],
            f"{p['size_remaining']:,.0f} / {p['size_bought']:,.0f}",
            f"{p['entry_price']:.10f}",
            f"{(p.get('current_price') or 0.0):.10f}",
            f"[{pnl_style}]{pnl_pct:+.1f}%[/{pnl_style}]",
            flags,
            _age(p.get("created_at")),
        )
    return table


def make_layout():
    layout = Layout()
    layout.split(
        Layout(name="header", size=3),
        Layout(name="main"),
        Layout(name="footer", size=3)
    )
    return layout


def main():
    layout = make_layout()

    layout["header"].update(Panel("APEX SNIPER - LIVE POSITIONS", style="bold white on blue"))
    layout["footer"].update(Panel(f"{DB_PATH} | Press Ctrl+C to exit", style="dim"))

    with Live(layout, refresh_per_second=1, screen=True):
        while True:
            try:
                if os.path.exists(DB_PATH):
                    try:
                        positions = load_positions(DB_PATH)
                        stamp = datetime.now().strftime('%H:%M:%S')
                        layout["header"].update(Panel(
                            f"APEX SNIPER | {len(positions)} active | Last Update: {stamp}",
                            style="bold white on blue"
                        ))
                        layout["main"].update(Panel(get_positions_table(positions), title="Open Positions", border_style="green"))
                    except sqlite3.OperationalError as e:
                        # Engine holds a write lock or the schema is not there yet
                        layout["main"].update(Panel(f"Database busy: {e}", title="Status", border_style="yellow"))
                else:
                    layout["main"].update(Panel("Waiting for engine database...", title="Status", border_style="yellow"))

                time.sleep(REFRESH_SECONDS)
            except KeyboardInterrupt:
                break


if __name__ == "__main__":
    main()
