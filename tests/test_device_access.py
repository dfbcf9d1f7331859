import pytest
from sqlalchemy.orm.exc import StaleDataError

from app.core.database import SessionLocal
from app.core.exceptions import (
    AccessExpired,
    DeviceLimitExceeded,
    DeviceNotFound,
    NotActive,
    PermissionDenied,
)
from app.models import Enrollment
from app.models.enums import AuditAction, EnrollmentType
from app.schemas.device import DeviceInfo
from app.services.device_access import DeviceAccessService
from app.services.enrollment import EnrollmentService
from tests.conftest import ADMIN, GURU, OTHER_STUDENT, STUDENT


@pytest.fixture
def devices(db):
    return DeviceAccessService(db)


@pytest.fixture
def enrollment(course, enroll):
    # device-0001 is registered on confirmation
    return enroll(STUDENT, course).enrollment


def test_register_up_to_the_limit(devices, enrollment):
    devices.add_device(STUDENT, enrollment.id, "device-0002")
    device, added = devices.add_device(
        STUDENT,
        enrollment.id,
        "device-0003",
        DeviceInfo(platform="mobile", browser="Chrome", ip_address="10.0.0.3"),
    )
    assert added
    assert device.platform == "mobile"

    with pytest.raises(DeviceLimitExceeded) as exc_info:
        devices.add_device(STUDENT, enrollment.id, "device-0004")
    assert exc_info.value.data == {"device_limit": 3, "active_devices": 3}

    listing = devices.list_devices(STUDENT, enrollment.id)
    assert listing.active_count == 3
    assert not listing.can_add_device


def test_known_device_is_refreshed_even_at_the_limit(devices, enrollment):
    devices.add_device(STUDENT, enrollment.id, "device-0002")
    devices.add_device(STUDENT, enrollment.id, "device-0003")

    device, added = devices.add_device(STUDENT, enrollment.id, "device-0001")

    assert not added
    assert device.is_active
    assert devices.list_devices(STUDENT, enrollment.id).active_count == 3


def test_removed_device_frees_a_slot_and_can_return(devices, enrollment):
    devices.add_device(STUDENT, enrollment.id, "device-0002")
    devices.add_device(STUDENT, enrollment.id, "device-0003")

    removed = devices.remove_device(STUDENT, enrollment.id, "device-0002")
    assert not removed.is_active
    assert removed.deactivated_at is not None

    with pytest.raises(DeviceNotFound):
        devices.remove_device(STUDENT, enrollment.id, "device-0002")

    device, added = devices.add_device(STUDENT, enrollment.id, "device-0002")
    assert added
    assert device.deactivated_at is None

    listing = devices.list_devices(STUDENT, enrollment.id, include_inactive=True)
    # reactivation reuses the row instead of adding another
    assert len(listing.devices) == 3
    assert listing.active_count == 3


def test_device_changes_are_audited(db, devices, enrollment):
    devices.add_device(STUDENT, enrollment.id, "device-0002")
    devices.remove_device(STUDENT, enrollment.id, "device-0002", ip_address="10.0.0.9")

    db.refresh(enrollment)
    actions = [e.action for e in enrollment.audit_events]
    assert actions[-2:] == [AuditAction.DEVICE_ADDED, AuditAction.DEVICE_REMOVED]
    assert enrollment.audit_events[-1].ip_address == "10.0.0.9"


def test_unknown_device(devices, enrollment):
    with pytest.raises(DeviceNotFound):
        devices.remove_device(STUDENT, enrollment.id, "device-9999")


def test_devices_are_private_to_the_learner(devices, enrollment):
    with pytest.raises(PermissionDenied):
        devices.add_device(OTHER_STUDENT, enrollment.id, "device-0002")
    # the course guru and admins can inspect but not register
    assert devices.list_devices(GURU, enrollment.id).active_count == 1
    assert devices.list_devices(ADMIN, enrollment.id).active_count == 1
    with pytest.raises(PermissionDenied):
        devices.add_device(GURU, enrollment.id, "device-0002")


def test_suspended_enrollment_cannot_register(db, devices, enrollment):
    EnrollmentService(db).suspend(ADMIN, enrollment.id, "Shared account")
    with pytest.raises(NotActive):
        devices.add_device(STUDENT, enrollment.id, "device-0002")


def test_expired_enrollment_cannot_register(devices, course, enroll, rewind):
    subscribed = enroll(
        OTHER_STUDENT, course, enrollment_type=EnrollmentType.SUBSCRIPTION
    ).enrollment
    rewind(subscribed, 40)
    with pytest.raises(AccessExpired):
        devices.add_device(OTHER_STUDENT, subscribed.id, "device-0002")


def test_concurrent_registration_cannot_exceed_the_limit(db, devices, enrollment):
    other = SessionLocal()
    try:
        # a second writer reads the aggregate before the first one commits
        stale = other.get(Enrollment, enrollment.id)
        assert stale.active_device_count == 1

        devices.add_device(STUDENT, enrollment.id, "device-0002")
        devices.add_device(STUDENT, enrollment.id, "device-0003")

        DeviceAccessService(other).register(stale, "device-0004")
        with pytest.raises(StaleDataError):
            other.commit()
        other.rollback()
    finally:
        other.close()

    db.expire_all()
    assert devices.list_devices(STUDENT, enrollment.id).active_count == 3
