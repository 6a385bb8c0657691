"""Player list parsing for Minecraft-style `list` command output."""

import re


PLAYER_LIST_PATTERN = re.compile(r"There are \d+ of a max of \d+ players online: (.*)")


def parse_player_list(lines: list[str]) -> list[str]:
    """
    Extract player names from sampled console lines.

    Looks for the first line mentioning "players online:" and splits the
    names after the colon. Returns [] when no such line was captured.
    """
    line = next((l for l in lines if "players online:" in l), None)
    if line is None:
        return []
    match = PLAYER_LIST_PATTERN.search(line)
    if not match:
        return []
    return [name.strip() for name in match.group(1).split(",") if name.strip()]
