"""Transaction status normalisation tests."""
import pytest

from compliance_payments.core.status import TransactionStatus, is_terminal, normalize_status


@pytest.mark.unit
class TestNormalizeStatus:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("success", TransactionStatus.SUCCESS),
            ("successful", TransactionStatus.SUCCESS),
            ("SUCCESS", TransactionStatus.SUCCESS),
            ("failed", TransactionStatus.FAILED),
            ("reversed", TransactionStatus.FAILED),
            ("abandoned", TransactionStatus.ABANDONED),
            ("ongoing", TransactionStatus.PENDING),
            ("processing", TransactionStatus.PENDING),
            ("queued", TransactionStatus.PENDING),
            ("unknown", TransactionStatus.PENDING),
        ],
    )
    def test_known_processor_statuses(self, raw: str, expected: TransactionStatus) -> None:
        assert normalize_status(raw) is expected

    def test_missing_status_is_pending(self) -> None:
        assert normalize_status(None) is TransactionStatus.PENDING

    def test_unrecognized_status_never_closes_a_transaction(self) -> None:
        status = normalize_status("settled_elsewhere")
        assert status is TransactionStatus.PENDING
        assert not status.is_terminal


@pytest.mark.unit
class TestIsTerminal:
    def test_terminal_statuses(self) -> None:
        assert is_terminal("success")
        assert is_terminal("failed")
        assert is_terminal("abandoned")

    def test_non_terminal_statuses(self) -> None:
        assert not is_terminal("provisional")
        assert not is_terminal("pending")

    def test_legacy_spelling(self) -> None:
        assert is_terminal("successful")
