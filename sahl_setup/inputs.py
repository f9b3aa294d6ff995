"""
Input resolution and validation.

Values come from, in priority order: the command line, the environment,
an interactive prompt, and finally a default. Interactive runs re-prompt
on bad input; non-interactive runs fail with InputValidationError.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import click

from sahl_setup.config import Strictness
from sahl_setup.errors import InputValidationError

logger = logging.getLogger(__name__)

ACCOUNT_ID_PATTERN = re.compile(r'^[0-9]{12}$')
STRICT_REGION_PATTERN = re.compile(r'^[a-z]{2}(-gov)?-[a-z]+-\d$')
MIN_REGION_LENGTH = 8

ACCOUNT_ID_EXAMPLE = '123456789012'
REGION_EXAMPLE = 'us-east-1 or eu-north-1'

COMMON_REGIONS = (
    ('us-east-1', 'US East - N. Virginia'),
    ('us-west-2', 'US West - Oregon'),
    ('eu-west-1', 'Europe - Ireland'),
    ('eu-north-1', 'Europe - Stockholm'),
    ('ap-southeast-1', 'Asia Pacific - Singapore'),
)

Validator = Callable[[str], str]


def normalize(value: Optional[str]) -> str:
    """Drop every whitespace character, including embedded ones."""
    if value is None:
        return ''
    return ''.join(str(value).split())


def is_valid_account_id(value: Optional[str]) -> bool:
    return bool(ACCOUNT_ID_PATTERN.match(normalize(value)))


def validate_account_id(value: Optional[str]) -> str:
    """
    Return the cleaned account id or raise InputValidationError.

    Only exactly twelve ASCII digits are accepted, after whitespace removal.
    """
    cleaned = normalize(value)
    if ACCOUNT_ID_PATTERN.match(cleaned):
        return cleaned
    raise InputValidationError(
        'account_id',
        cleaned,
        f"AWS Account ID must be exactly 12 digits "
        f"(you entered: '{cleaned}' with {len(cleaned)} characters)",
        example=ACCOUNT_ID_EXAMPLE,
    )


def validate_region(value: Optional[str], strictness: Strictness = Strictness.STANDARD) -> str:
    """Return the cleaned region or raise InputValidationError."""
    cleaned = normalize(value)
    if not cleaned:
        reason = "AWS Region cannot be empty"
    elif strictness is Strictness.LENIENT:
        return cleaned
    elif strictness is Strictness.STANDARD:
        if len(cleaned) >= MIN_REGION_LENGTH:
            return cleaned
        reason = f"AWS Region should be at least {MIN_REGION_LENGTH} characters"
    else:
        if STRICT_REGION_PATTERN.match(cleaned):
            return cleaned
        reason = "AWS Region must look like <area>-<direction>-<number>"
    raise InputValidationError(
        'region',
        cleaned,
        f"{reason} (you entered: '{cleaned}')",
        example=REGION_EXAMPLE,
    )


def region_validator(strictness: Strictness) -> Validator:
    return lambda value: validate_region(value, strictness)


def validate_guid(field: str) -> Validator:
    """Validator for Azure subscription/tenant ids."""
    pattern = re.compile(r'^[0-9a-fA-F]{8}-([0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}$')

    def _validate(value: str) -> str:
        cleaned = normalize(value)
        if pattern.match(cleaned):
            return cleaned.lower()
        raise InputValidationError(
            field, cleaned, f"{field} must be a GUID (you entered: '{cleaned}')",
            example='00000000-0000-0000-0000-000000000000',
        )
    return _validate


# ═══════════════════════════════════════════════════════════════════════════════
# Resolution
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass
class ResolvedValue:
    value: str
    source: str  # argument | environment | prompt | default


def _prompt_value_proc(validator: Validator) -> Callable[[str], str]:
    """Adapt a validator so click.prompt re-asks on failure."""
    def _proc(raw: str) -> str:
        try:
            return validator(raw)
        except InputValidationError as e:
            hint = f"\nExample: {e.example}" if e.example else ''
            raise click.BadParameter(f"{e}. Please try again.{hint}")
    return _proc


def resolve_input(
    *,
    field: str,
    validator: Validator,
    argument: Optional[str] = None,
    env_vars: Sequence[str] = (),
    interactive: bool = False,
    prompt_text: Optional[str] = None,
    default: Optional[Callable[[], Optional[str]]] = None,
) -> ResolvedValue:
    """
    Resolve one input value.

    Args:
        field: Name used in messages
        validator: Returns the cleaned value or raises InputValidationError
        argument: Value given on the command line, if any
        env_vars: Environment variables consulted in order
        interactive: Whether prompting is allowed
        prompt_text: Prompt shown in interactive mode
        default: Lazily computed fallback value

    Raises:
        InputValidationError: Bad value in non-interactive mode, or nothing
            resolvable at all
    """
    candidates = []
    if argument is not None and normalize(argument):
        candidates.append((argument, 'argument'))
    for name in env_vars:
        env_value = os.environ.get(name)
        if env_value and normalize(env_value):
            candidates.append((env_value, 'environment'))
            break

    for raw, source in candidates:
        try:
            value = validator(raw)
            logger.debug("Resolved %s from %s", field, source)
            return ResolvedValue(value, source)
        except InputValidationError as e:
            if not interactive:
                raise
            click.echo(f"ERROR: {e}", err=True)
            logger.info("Ignoring invalid %s from %s, prompting instead", field, source)

    default_value = default() if default is not None else None

    if interactive:
        value = click.prompt(
            prompt_text or f"Enter {field}",
            default=default_value,
            value_proc=_prompt_value_proc(validator),
        )
        if default_value is not None and value == default_value:
            return ResolvedValue(value, 'default')
        return ResolvedValue(value, 'prompt')

    if default_value is not None:
        logger.debug("Resolved %s from default", field)
        return ResolvedValue(validator(default_value), 'default')

    raise InputValidationError(field, '', f"No {field} given and none could be detected")
