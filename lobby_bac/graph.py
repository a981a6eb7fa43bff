"""
Lobby BAC-over-time graph. Produces an image file or returns data for web/iOS.
"""

from pathlib import Path
from typing import Any, Dict, List

from lobby_bac.drinks import format_timestamp
from lobby_bac.snapshot import LobbySnapshot


def chart_series(snapshot: LobbySnapshot) -> List[Dict[str, Any]]:
    """One series per member, in ranking order, for any frontend (web, iOS)."""
    points_by_member: Dict[int, List[Dict[str, Any]]] = {}
    for p in snapshot.chart_points:
        points_by_member.setdefault(p.user_id, []).append({"t": format_timestamp(p.at), "bac": round(p.bac, 4)})
    return [
        {"user_id": m.user_id, "nickname": m.nickname, "points": points_by_member[m.user_id]}
        for m in snapshot.ranked
        if m.user_id in points_by_member
    ]


def save_lobby_graph(
    snapshot: LobbySnapshot,
    output_path: str = "lobby_bac.png",
    title: str = "Lobby BAC over time",
) -> str:
    """
    Plot each member's BAC curve with matplotlib and save to file.
    Returns path to saved file. Requires: pip install matplotlib
    """
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except ImportError:
        raise ImportError("matplotlib is required for save_lobby_graph. pip install matplotlib")

    names = {m.user_id: m.nickname for m in snapshot.ranked}
    series: Dict[int, List] = {}
    for p in snapshot.chart_points:
        series.setdefault(p.user_id, []).append((p.at, p.bac))

    fig, ax = plt.subplots(figsize=(10, 5))
    if not series:
        ax.plot([snapshot.query_time], [0.0], color="#2563eb")
    for user_id, points in series.items():
        times, bacs = zip(*points)
        ax.plot(times, bacs, linewidth=2, label=names.get(user_id, "Member"))
    ax.set_xlabel("Time")
    ax.set_ylabel("BAC (‰)")
    ax.set_title(title)
    if series:
        ax.legend(loc="upper right")
    ax.set_ylim(bottom=0, top=snapshot.max_display_y * 1.1)
    ax.grid(True, alpha=0.3)
    fig.autofmt_xdate()
    fig.tight_layout()
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150)
    plt.close(fig)
    return output_path
