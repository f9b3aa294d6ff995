"""
`sahl-setup validate-account-id`: check account ids without touching AWS.
"""

import logging
from typing import Iterable, List, Tuple

from rich.markup import escape

from sahl_setup import cli_utils
from sahl_setup.inputs import is_valid_account_id, normalize

logger = logging.getLogger(__name__)


def run_validate(values: Iterable[str]) -> List[Tuple[str, bool]]:
    """
    Print VALID/INVALID for each value.

    Returns:
        (value, valid) pairs in input order
    """
    console = cli_utils.get_console()
    results = []
    for value in values:
        valid = is_valid_account_id(value)
        cleaned = normalize(value)
        results.append((value, valid))
        if valid:
            console.print(f"[green]VALID[/green]   '{escape(value)}' -> {cleaned}")
        else:
            console.print(f"[red]INVALID[/red] '{escape(value)}' ({len(cleaned)} characters after trimming)")
    logger.debug("Validated %d value(s)", len(results))
    return results
