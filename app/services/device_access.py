# app/services/device_access.py
import logging
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import Settings, settings
from app.core.decorator import db_exception
from app.core.exceptions import (
    AccessExpired,
    DeviceLimitExceeded,
    DeviceNotFound,
    NotActive,
)
from app.models.enrollment import Enrollment
from app.models.enrollment_device import EnrollmentDevice
from app.models.enums import AuditAction, EnrollmentStatus
from app.schemas.auth import Principal
from app.schemas.device import DeviceInfo, DeviceListResponse, DeviceResponse
from app.services.audit import record_audit
from app.services.lifecycle import authorize, load_enrollment, refresh_lifecycle
from app.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


class DeviceAccessService:
    """
    Per-enrollment device registry.

    The device id is an opaque fingerprint computed by the caller. Every
    change bumps the enrollment's version, so two concurrent registrations
    at the limit cannot both commit.
    """

    def __init__(self, db: Session, config: Settings = settings):
        self.db = db
        self.config = config

    @staticmethod
    def _find(enrollment: Enrollment, device_id: str) -> Optional[EnrollmentDevice]:
        for device in enrollment.devices:
            if device.device_id == device_id:
                return device
        return None

    @staticmethod
    def _apply_info(device: EnrollmentDevice, info: Optional[DeviceInfo]) -> None:
        if not info:
            return
        device.platform = info.platform or device.platform
        device.browser = info.browser or device.browser
        device.os = info.os or device.os
        device.user_agent = info.user_agent or device.user_agent
        device.ip_address = info.ip_address or device.ip_address
        device.locale = info.locale or device.locale

    def register(
        self,
        enrollment: Enrollment,
        device_id: str,
        info: Optional[DeviceInfo] = None,
        actor: Optional[Principal] = None,
    ) -> Tuple[EnrollmentDevice, bool]:
        """
        Register ``device_id`` within the current unit of work.

        Returns (device, added). An already active device is only refreshed,
        which also holds when the enrollment is at its limit.
        """
        now = utcnow()
        device = self._find(enrollment, device_id)

        if device is not None and device.is_active:
            device.last_seen_at = now
            self._apply_info(device, info)
            return device, False

        active_count = enrollment.active_device_count
        if active_count >= enrollment.device_limit:
            logger.info(
                f"Device limit reached for enrollment {enrollment.id} "
                f"({active_count}/{enrollment.device_limit})"
            )
            raise DeviceLimitExceeded(
                f"Device limit exceeded. Maximum {enrollment.device_limit} devices allowed",
                data={
                    "device_limit": enrollment.device_limit,
                    "active_devices": active_count,
                },
            )

        if device is not None:
            device.is_active = True
            device.deactivated_at = None
            device.last_seen_at = now
            self._apply_info(device, info)
        else:
            device = EnrollmentDevice(
                device_id=device_id,
                registered_at=now,
                last_seen_at=now,
                is_active=True,
            )
            self._apply_info(device, info)
            enrollment.devices.append(device)

        enrollment.touch()
        record_audit(
            enrollment,
            AuditAction.DEVICE_ADDED,
            actor=actor,
            reason=None,
            details={"device_id": device_id, "platform": device.platform},
            ip_address=info.ip_address if info else None,
        )
        return device, True

    @db_exception
    def add_device(
        self,
        principal: Principal,
        enrollment_id: int,
        device_id: str,
        info: Optional[DeviceInfo] = None,
    ) -> Tuple[EnrollmentDevice, bool]:
        enrollment = load_enrollment(self.db, enrollment_id, lock=True)
        authorize(enrollment, principal)

        if refresh_lifecycle(enrollment):
            self.db.commit()
        if enrollment.status == EnrollmentStatus.EXPIRED:
            raise AccessExpired()
        if enrollment.status != EnrollmentStatus.ACTIVE or not enrollment.access_active:
            raise NotActive()

        device, added = self.register(enrollment, device_id, info, actor=principal)
        self.db.commit()
        self.db.refresh(device)
        if added:
            logger.info(f"Device {device_id} registered on enrollment {enrollment_id}")
        return device, added

    @db_exception
    def remove_device(
        self,
        principal: Principal,
        enrollment_id: int,
        device_id: str,
        ip_address: Optional[str] = None,
    ) -> EnrollmentDevice:
        enrollment = load_enrollment(self.db, enrollment_id, lock=True)
        authorize(enrollment, principal)

        device = self._find(enrollment, device_id)
        if device is None or not device.is_active:
            raise DeviceNotFound(data={"device_id": device_id})

        device.is_active = False
        device.deactivated_at = utcnow()
        enrollment.touch()
        record_audit(
            enrollment,
            AuditAction.DEVICE_REMOVED,
            actor=principal,
            details={"device_id": device_id},
            ip_address=ip_address,
        )
        self.db.commit()
        self.db.refresh(device)
        logger.info(f"Device {device_id} removed from enrollment {enrollment_id}")
        return device

    def list_devices(
        self, principal: Principal, enrollment_id: int, include_inactive: bool = False
    ) -> DeviceListResponse:
        enrollment = load_enrollment(self.db, enrollment_id)
        authorize(enrollment, principal, allow_guru=True)
        devices = enrollment.devices if include_inactive else enrollment.active_devices
        active_count = enrollment.active_device_count
        return DeviceListResponse(
            devices=[DeviceResponse.model_validate(d) for d in devices],
            active_count=active_count,
            device_limit=enrollment.device_limit,
            can_add_device=active_count < enrollment.device_limit,
        )
