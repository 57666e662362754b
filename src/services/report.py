from __future__ import annotations

from typing import List

from models import Recommendation, Restaurant, Session
from services.categories import display_name_for
from services.join_code import format_join_code


def _line(r: Restaurant) -> str:
    tags = ", ".join(display_name_for(t) for t in r.types[:3])
    rating = f" · {r.rating:.1f}★" if r.rating is not None else ""
    addr = f", {r.vicinity}" if r.vicinity else ""
    return f"- **{r.name}**{rating}{addr}" + (f" ({tags})" if tags else "")


def build_report(
    session: Session,
    participant_count: int,
    page: List[Restaurant],
    survivors: List[Restaurant],
    recommendations: List[Recommendation],
) -> str:
    """Markdown summary of where the group ended up."""
    loc = session.location
    header = [
        "## Group Restaurant Pick",
        "",
        f"- Code: {format_join_code(session.join_code)}",
        f"- Status: {session.status.value}",
        f"- Participants: {participant_count}",
        f"- Search area: {loc.address or f'{loc.latitude:.4f}, {loc.longitude:.4f}'} (radius {loc.radius / 1000:.1f} km)",
        "",
    ]

    lines: list[str] = list(header)
    if session.winner is not None:
        lines.append("### Winner")
        lines.append(_line(session.winner.to_restaurant()))
        lines.append("")

    lines.append("### Top Picks")
    if recommendations:
        for idx, rec in enumerate(recommendations, start=1):
            lines.append(f"{idx}. **{rec.restaurant.name}** (score {rec.score:.2f})")
            lines.append(f"   - {rec.reasoning}")
    else:
        lines.append("- No recommendations yet.")
    lines.append("")

    lines.append(f"### Still Standing ({len(survivors)} of {len(page)})")
    if survivors:
        lines.extend(_line(r) for r in survivors)
    else:
        lines.append("- You eliminated everything! Go back and remove some eliminations.")

    return "\n".join(lines).rstrip() + "\n"
