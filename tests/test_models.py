import pytest
from pydantic import ValidationError

from gpunode.core.models import (
    BUSY_THRESHOLD_PERCENT,
    DeviceInfo,
    RegistrationResponse,
    WorkloadInfo,
    WorkloadSpec,
    is_device_busy,
)


def test_device_is_idle_below_threshold():
    device = DeviceInfo(index=0, memory_total_mb=10000, memory_used_mb=500, utilization_percent=5.0)
    assert device.busy is False


def test_device_is_busy_on_memory_share():
    device = DeviceInfo(index=0, memory_total_mb=10000, memory_used_mb=2000, utilization_percent=0.0)
    assert device.busy is True


def test_device_is_busy_on_utilization():
    device = DeviceInfo(index=0, memory_total_mb=10000, memory_used_mb=0, utilization_percent=50.0)
    assert device.busy is True


def test_threshold_is_exclusive():
    assert is_device_busy(1000, 100, BUSY_THRESHOLD_PERCENT) is False
    assert is_device_busy(1000, 101, 0.0) is True


def test_zero_total_memory_is_never_busy_by_memory():
    assert is_device_busy(0, 0, 0.0) is False


def test_busy_is_serialized():
    device = DeviceInfo(index=1, memory_total_mb=100, memory_used_mb=90)
    assert device.model_dump()["busy"] is True


def test_workload_spec_rejects_duplicate_indices():
    with pytest.raises(ValidationError):
        WorkloadSpec(claim_id="c1", image="img", device_indices=[0, 0])


def test_workload_spec_rejects_negative_indices():
    with pytest.raises(ValidationError):
        WorkloadSpec(claim_id="c1", image="img", device_indices=[-1])


def test_workload_spec_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        WorkloadSpec(claim_id="c1", image="img", gpus=[0])


@pytest.mark.parametrize(
    "status, running",
    [("running", True), ("Up 3 minutes", True), ("exited", False), ("created", False)],
)
def test_workload_info_is_running(status, running):
    assert WorkloadInfo(id="w1", status=status).is_running is running


def test_registration_response_coerces_numeric_node_id():
    response = RegistrationResponse.model_validate({"node_id": 17, "message": "ok", "extra": "ignored"})
    assert response.node_id == "17"


def test_registration_response_rejects_blank_node_id():
    with pytest.raises(ValidationError):
        RegistrationResponse.model_validate({"node_id": "  "})
