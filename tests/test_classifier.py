from alpaca_hub.backends.codes import CaaCode, EafCode, SerialCode
from alpaca_hub.config.models import BackendKind
from alpaca_hub.core.classifier import (
    Classification,
    ErrorClass,
    classify,
    register_table,
)
from alpaca_hub.core.state import CommandOutcome


def test_removed_device_is_fatal() -> None:
    result = classify("zwo_eaf", EafCode.REMOVED)
    assert result.is_fatal
    assert result.outcome == CommandOutcome.CONNECTION_LOST


def test_moving_is_transient_busy() -> None:
    result = classify("zwo_eaf", EafCode.MOVING)
    assert result.error_class is ErrorClass.TRANSIENT
    assert result.outcome == CommandOutcome.HARDWARE_BUSY


def test_caa_range_errors_are_invalid_requests() -> None:
    assert classify("zwo_caa", CaaCode.OUT_RANGE).outcome == CommandOutcome.INVALID_REQUEST
    assert classify("zwo_caa", CaaCode.OVER_LIMIT).outcome == CommandOutcome.INVALID_REQUEST
    assert classify("zwo_caa", CaaCode.TIMEOUT).outcome == CommandOutcome.TIMEOUT


def test_serial_codes() -> None:
    assert classify("robofocus", SerialCode.IO_ERROR).is_fatal
    assert classify("ioptron", SerialCode.PORT_NOT_FOUND).is_fatal
    assert not classify("ioptron", SerialCode.READ_TIMEOUT).is_fatal
    assert classify("ioptron", SerialCode.BAD_FRAME).outcome == CommandOutcome.PROTOCOL_VIOLATION


def test_success_is_benign() -> None:
    assert classify("zwo_caa", 0).error_class is ErrorClass.BENIGN


def test_unknown_code_never_drops_the_connection() -> None:
    result = classify("zwo_eaf", 9999)
    assert not result.is_fatal
    assert result.outcome == CommandOutcome.HARDWARE_BUSY


def test_unknown_backend_kind() -> None:
    assert classify("nosuch", 0).error_class is ErrorClass.BENIGN
    assert not classify("nosuch", 42).is_fatal


def test_enum_kind_is_accepted() -> None:
    assert classify(BackendKind.ZWO_EAF, EafCode.CLOSED).is_fatal


def test_register_table_for_new_family() -> None:
    fatal = Classification(ErrorClass.FATAL, CommandOutcome.CONNECTION_LOST)
    register_table("test_family", {7: fatal})
    assert classify("test_family", 7).is_fatal
    assert not classify("test_family", 8).is_fatal
