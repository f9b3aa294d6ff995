"""Account id / region validation and input resolution order."""

from unittest import mock

import click
import pytest
from click.testing import CliRunner

from sahl_setup.config import Strictness
from sahl_setup.errors import InputValidationError
from sahl_setup.inputs import (
    _prompt_value_proc,
    is_valid_account_id,
    normalize,
    region_validator,
    resolve_input,
    validate_account_id,
    validate_guid,
    validate_region,
)


class TestAccountId:

    @pytest.mark.parametrize('value', [
        '123456789012',
        ' 123456789012 ',
        '\t123456789012\n',
        '1234 5678 9012',
        '000000000000',
    ])
    def test_accepts_twelve_digits_after_trimming(self, value):
        assert is_valid_account_id(value)
        assert validate_account_id(value) == normalize(value)

    @pytest.mark.parametrize('value', [
        None,
        '',
        '   ',
        '12345678901',
        '1234567890123',
        '12345678901a',
        'abcdefghijkl',
        '1234-5678-9012',
        '１２３４５６７８９０１２',  # full-width digits
    ])
    def test_rejects_everything_else(self, value):
        assert not is_valid_account_id(value)
        with pytest.raises(InputValidationError) as exc_info:
            validate_account_id(value)
        assert exc_info.value.field == 'account_id'
        assert exc_info.value.example == '123456789012'

    def test_error_reports_length(self):
        with pytest.raises(InputValidationError, match='with 5 characters'):
            validate_account_id('12345')


class TestRegion:

    @pytest.mark.parametrize('strictness', list(Strictness))
    def test_empty_is_always_rejected(self, strictness):
        with pytest.raises(InputValidationError, match='cannot be empty'):
            validate_region('  ', strictness)

    def test_lenient_accepts_anything_non_empty(self):
        assert validate_region('x', Strictness.LENIENT) == 'x'

    def test_standard_requires_eight_characters(self):
        assert validate_region('us-east-1', Strictness.STANDARD) == 'us-east-1'
        with pytest.raises(InputValidationError):
            validate_region('us-east', Strictness.STANDARD)

    @pytest.mark.parametrize('region', ['us-east-1', 'eu-north-1', 'ap-southeast-2', 'us-gov-west-1'])
    def test_strict_accepts_region_codes(self, region):
        assert validate_region(region, Strictness.STRICT) == region

    @pytest.mark.parametrize('region', ['US-EAST-1', 'useast1xx', 'us-east-12', 'us-east'])
    def test_strict_rejects_lookalikes(self, region):
        with pytest.raises(InputValidationError):
            validate_region(region, Strictness.STRICT)


def test_validate_guid_lowercases():
    validator = validate_guid('subscription_id')
    assert validator(' AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE ') == 'aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee'
    with pytest.raises(InputValidationError):
        validator('not-a-guid')


class TestResolveInput:

    def test_argument_beats_environment(self, monkeypatch):
        monkeypatch.setenv('AWS_REGION', 'eu-west-1')
        resolved = resolve_input(
            field='region', validator=region_validator(Strictness.STANDARD),
            argument='us-west-2', env_vars=('AWS_REGION',),
        )
        assert (resolved.value, resolved.source) == ('us-west-2', 'argument')

    def test_environment_in_order(self, monkeypatch):
        monkeypatch.setenv('AWS_DEFAULT_REGION', 'eu-north-1')
        resolved = resolve_input(
            field='region', validator=region_validator(Strictness.STANDARD),
            env_vars=('AWS_REGION', 'AWS_DEFAULT_REGION'),
        )
        assert (resolved.value, resolved.source) == ('eu-north-1', 'environment')

    def test_default_when_nothing_given(self):
        resolved = resolve_input(
            field='region', validator=region_validator(Strictness.STANDARD),
            default=lambda: 'us-east-1',
        )
        assert (resolved.value, resolved.source) == ('us-east-1', 'default')

    def test_non_interactive_invalid_argument_raises(self):
        with pytest.raises(InputValidationError):
            resolve_input(
                field='account_id', validator=validate_account_id,
                argument='12345', default=lambda: '123456789012',
            )

    def test_nothing_resolvable_raises(self):
        with pytest.raises(InputValidationError, match='No account_id given'):
            resolve_input(field='account_id', validator=validate_account_id)

    def test_interactive_invalid_argument_falls_back_to_prompt(self):
        with mock.patch.object(click, 'prompt', return_value='123456789012') as prompt:
            resolved = resolve_input(
                field='account_id', validator=validate_account_id,
                argument='12345', interactive=True, prompt_text='AWS Account ID',
            )
        prompt.assert_called_once()
        assert (resolved.value, resolved.source) == ('123456789012', 'prompt')

    def test_prompt_reasks_until_valid(self):
        runner = CliRunner()
        with runner.isolation(input='12345\n123456789012\n'):
            resolved = resolve_input(
                field='account_id', validator=validate_account_id,
                interactive=True, prompt_text='AWS Account ID',
            )
        assert resolved.value == '123456789012'

    def test_prompt_value_proc_raises_bad_parameter(self):
        proc = _prompt_value_proc(validate_account_id)
        assert proc(' 123456789012 ') == '123456789012'
        with pytest.raises(click.BadParameter, match='Example: 123456789012'):
            proc('abc')
