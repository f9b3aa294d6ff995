"""ensure() state machine and the bounded retry helper."""

from unittest import mock

import pytest

from sahl_setup.config import RetryPolicy
from sahl_setup.ensure import EnsureOutcome, ResourceState, ensure
from sahl_setup.errors import InputValidationError, ProvisioningError, TransientProviderError
from sahl_setup.retry import retry


class AlreadyThere(Exception):
    pass


class TestEnsure:

    def test_existing_resource_is_reused(self):
        create = mock.Mock()
        result = ensure('thing', lambda: {'id': 1}, create)
        assert result.outcome is EnsureOutcome.ALREADY_PRESENT
        assert not result.created
        assert result.value == {'id': 1}
        assert result.state is ResourceState.PRESENT
        create.assert_not_called()

    def test_absent_resource_is_created(self):
        result = ensure('thing', lambda: None, lambda: 'new')
        assert result.created
        assert result.value == 'new'
        assert result.history == [ResourceState.ABSENT, ResourceState.CREATING, ResourceState.PRESENT]

    def test_conflict_counts_as_present(self):
        lookups = iter([None, 'raced'])

        def create():
            raise AlreadyThere()

        result = ensure(
            'thing', lambda: next(lookups), create,
            is_conflict=lambda e: isinstance(e, AlreadyThere),
        )
        assert result.outcome is EnsureOutcome.ALREADY_PRESENT
        assert result.value == 'raced'
        assert result.state is ResourceState.PRESENT

    def test_on_conflict_overrides_reread(self):
        def create():
            raise AlreadyThere()

        result = ensure(
            'thing', lambda: None, create,
            is_conflict=lambda e: True, on_conflict=lambda: 'fallback',
        )
        assert result.value == 'fallback'

    def test_other_errors_become_provisioning_errors(self):
        def create():
            raise RuntimeError('boom')

        with pytest.raises(ProvisioningError) as exc_info:
            ensure('IAM role X', lambda: None, create)
        assert exc_info.value.step == 'IAM role X'
        assert isinstance(exc_info.value.cause, RuntimeError)

    def test_provisioning_error_passes_through(self):
        original = ProvisioningError('inner step', 'gave up')

        def create():
            raise original

        with pytest.raises(ProvisioningError) as exc_info:
            ensure('outer', lambda: None, create)
        assert exc_info.value is original

    def test_second_run_reports_already_present(self):
        store = {}

        def exists():
            return store.get('role')

        def create():
            store['role'] = 'arn'
            return 'arn'

        first = ensure('role', exists, create)
        second = ensure('role', exists, create)
        assert first.created
        assert second.outcome is EnsureOutcome.ALREADY_PRESENT


class TestRetry:

    def test_returns_first_success(self):
        sleep = mock.Mock()
        fn = mock.Mock(side_effect=[TransientProviderError('not yet'), 'ok'])
        assert retry(fn, RetryPolicy(attempts=5, delay_seconds=3), step='s', sleep=sleep) == 'ok'
        assert fn.call_count == 2
        sleep.assert_called_once_with(3)

    def test_gives_up_after_configured_attempts(self):
        sleep = mock.Mock()
        fn = mock.Mock(side_effect=TransientProviderError('still not'))
        with pytest.raises(ProvisioningError, match='gave up after 4 attempts') as exc_info:
            retry(fn, RetryPolicy(attempts=4, delay_seconds=1), step='attach', sleep=sleep)
        assert fn.call_count == 4
        assert sleep.call_count == 3
        assert exc_info.value.step == 'attach'

    def test_non_transient_errors_are_not_retried(self):
        fn = mock.Mock(side_effect=InputValidationError('f', 'v', 'bad'))
        with pytest.raises(InputValidationError):
            retry(fn, RetryPolicy(attempts=5, delay_seconds=0), step='s', sleep=mock.Mock())
        assert fn.call_count == 1

    def test_custom_retry_on(self):
        fn = mock.Mock(side_effect=[KeyError('x'), 'ok'])
        assert retry(fn, RetryPolicy(attempts=2, delay_seconds=0), step='s',
                     retry_on=(KeyError,), sleep=mock.Mock()) == 'ok'

    def test_zero_attempts_still_calls_once(self):
        fn = mock.Mock(return_value='ok')
        assert retry(fn, RetryPolicy(attempts=0), step='s', sleep=mock.Mock()) == 'ok'
