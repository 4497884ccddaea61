"""
Medication Service
==================
Business logic the HTTP API calls when it writes medications.

Chức năng chính:
1. Tạo thuốc mới, có kiểm tra tương tác thuốc (`create_medication`).
   - Nếu phát hiện tương tác và người dùng chưa xác nhận (`ignore_warnings`),
     trả về cảnh báo và KHÔNG lưu.
2. Cập nhật / lưu trữ thuốc; tính lại `next_reminder` khi lịch thay đổi.
3. Ghi nhận uống / bỏ lỡ liều và thống kê tuân thủ.
4. Tồn kho: mỗi liều đã uống trừ 1 đơn vị, cảnh báo khi chạm ngưỡng; nhập thêm thuốc (`refill_medication`).

Scheduler không được gọi trực tiếp từ đây: nó tự nhận thay đổi ở lần
reconciliation kế tiếp (mỗi 60 giây).
"""

import logging
from datetime import datetime, time
from typing import Dict, Optional

from flask import current_app

from medisafe.models.base import db
from medisafe.models.medication import Medication, REMINDER_METHODS, STATUSES, TAKE_WITH_OPTIONS
from medisafe.services.interaction_service import check_interactions
from medisafe.utils.timezone import get_timezone, parse_time_slot, to_db, utcnow

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = ('schedule_times', 'end_date', 'start_date')


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _parse_times(values):
    if not values:
        raise ValueError("schedule_times must contain at least one time of day")
    return sorted({parse_time_slot(value) for value in values})


def _parse_methods(values):
    methods = list(dict.fromkeys(values or []))
    unknown = [m for m in methods if m not in REMINDER_METHODS]
    if unknown:
        raise ValueError(f"Unknown reminder methods: {', '.join(unknown)}")
    return methods


def _parse_date(value, end_of_day=False):
    """
    'YYYY-MM-DD' (local date) or datetime -> naive UTC.

    End dates cover the whole local day.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return to_db(value) if value.tzinfo else value
    day = datetime.strptime(value, '%Y-%m-%d').date()
    local = datetime.combine(day, time(23, 59, 59) if end_of_day else time(0, 0))
    return to_db(get_timezone().localize(local))


def _enforce_end_date():
    return current_app.config.get('REMINDER_ENFORCE_END_DATE', True)


def _apply_fields(medication: Medication, data: dict):
    if 'name' in data:
        name = (data['name'] or '').strip()
        if len(name) < 2:
            raise ValueError("Medication name must be at least 2 characters")
        medication.name = name

    dosage = data.get('dosage')
    if isinstance(dosage, dict):
        medication.dosage_value = str(dosage['value']) if dosage.get('value') is not None else None
        medication.dosage_unit = dosage.get('unit')
        medication.dosage_form = dosage.get('form')
    elif dosage is not None:
        medication.dosage_value = str(dosage)
        medication.dosage_unit = None

    if 'take_with' in data:
        if data['take_with'] and data['take_with'] not in TAKE_WITH_OPTIONS:
            raise ValueError(f"Invalid take_with: {data['take_with']}")
        medication.take_with = data['take_with']
    if 'special_instructions' in data:
        medication.special_instructions = data['special_instructions']
    if 'notes' in data:
        medication.notes = data['notes']
    if 'frequency' in data:
        medication.frequency = data['frequency']

    if 'schedule_times' in data:
        medication.set_schedule_times(_parse_times(data['schedule_times']))
    if 'start_date' in data and data['start_date']:
        medication.start_date = _parse_date(data['start_date'])
    if 'end_date' in data:
        medication.end_date = _parse_date(data['end_date'], end_of_day=True)

    if 'reminder_methods' in data:
        medication.set_reminder_methods(_parse_methods(data['reminder_methods']))
    if 'reminders_enabled' in data:
        medication.reminders_enabled = bool(data['reminders_enabled'])
    if 'notify_emergency_contacts' in data:
        medication.notify_emergency_contacts = bool(data['notify_emergency_contacts'])

    inventory = data.get('inventory')
    if isinstance(inventory, dict):
        if 'enabled' in inventory:
            medication.inventory_enabled = bool(inventory['enabled'])
        if inventory.get('low_stock_threshold') is not None:
            threshold = int(inventory['low_stock_threshold'])
            if threshold < 1:
                raise ValueError("low_stock_threshold must be at least 1")
            medication.low_stock_threshold = threshold
        if inventory.get('current_quantity') is not None:
            quantity = int(inventory['current_quantity'])
            if quantity < 0:
                raise ValueError("current_quantity cannot be negative")
            if quantity > (medication.current_quantity or 0):
                medication.last_refill_date = to_db(utcnow())
            medication.current_quantity = quantity

    if 'status' in data:
        if data['status'] not in STATUSES:
            raise ValueError(f"Invalid status: {data['status']}")
        medication.status = data['status']


# ============================================================================
# CRUD
# ============================================================================

def create_medication(user_id: int, data: dict) -> Dict:
    """
    Tạo thuốc mới sau khi kiểm tra tương tác thuốc.

    Args:
        user_id: ID người dùng
        data: name, dosage, schedule_times, reminder_methods, ..., ignore_warnings

    Returns:
        dict:
            {'success': True, 'medication': Medication}
            hoặc {'success': False, 'confirmation_required': True, 'warning': {...}}

    Raises:
        ValueError: dữ liệu không hợp lệ
    """
    if not data.get('name'):
        raise ValueError("Medication name is required")
    if not data.get('schedule_times'):
        raise ValueError("schedule_times is required")

    existing = Medication.find_active_by_user(user_id)
    detected = check_interactions(data['name'], existing)

    if detected and not data.get('ignore_warnings'):
        logger.info(f"⚠️ Blocking save due to interactions for {data['name']} (user {user_id})")
        return {
            'success': False,
            'confirmation_required': True,
            'warning': {
                'title': 'Interaction Warning',
                'count': len(detected),
                'details': detected
            }
        }

    medication = Medication(user_id=user_id, status='active', is_archived=False)
    _apply_fields(medication, data)

    # All channels are on unless the client picked some
    if not medication.get_reminder_methods():
        medication.set_reminder_methods(REMINDER_METHODS)

    if detected:
        logger.info(f"⚠️ Interactions detected for {medication.name}, but user ignored warnings.")
        medication.set_interactions(detected)

    medication.update_next_reminder(enforce_end_date=_enforce_end_date())

    db.session.add(medication)
    db.session.commit()

    logger.info(f"✅ Medication added: {medication.name}, Next reminder: {medication.next_reminder}")
    return {'success': True, 'medication': medication}


def get_medication(medication_id: int, user_id: int) -> Optional[Medication]:
    return Medication.query.filter_by(medication_id=medication_id, user_id=user_id).first()


def update_medication(medication_id: int, user_id: int, data: dict) -> Optional[Medication]:
    """
    Cập nhật thuốc. Nếu lịch thay đổi thì tính lại next_reminder.
    """
    medication = get_medication(medication_id, user_id)
    if not medication:
        return None

    _apply_fields(medication, data)

    if any(field in data for field in SCHEDULE_FIELDS):
        medication.update_next_reminder(enforce_end_date=_enforce_end_date())

    db.session.commit()
    return medication


def archive_medication(medication_id: int, user_id: int) -> bool:
    """Soft delete: is_archived = True, status = stopped."""
    medication = get_medication(medication_id, user_id)
    if not medication:
        return False

    medication.is_archived = True
    medication.status = 'stopped'
    db.session.commit()
    return True


# ============================================================================
# ADHERENCE
# ============================================================================

def record_dose_taken(medication_id: int, user_id: int, note: Optional[str] = None) -> Optional[Medication]:
    medication = get_medication(medication_id, user_id)
    if not medication:
        return None
    medication.mark_as_taken(note)
    db.session.commit()
    return medication


def refill_medication(medication_id: int, user_id: int, quantity: int) -> Optional[Medication]:
    medication = get_medication(medication_id, user_id)
    if not medication:
        return None
    medication.refill(quantity)
    db.session.commit()
    logger.info(f"📦 Refilled {medication.name}: {medication.current_quantity} in stock")
    return medication


def record_dose_missed(medication_id: int, user_id: int) -> Optional[Medication]:
    medication = get_medication(medication_id, user_id)
    if not medication:
        return None
    medication.mark_as_missed()
    db.session.commit()
    return medication


def get_adherence_stats(user_id: int) -> Dict:
    """
    Thống kê tuân thủ trên các thuốc đang dùng.
    Tỷ lệ = tổng liều đã uống / tổng liều.
    """
    medications = Medication.query.filter_by(user_id=user_id, status='active', is_archived=False).all()

    total = sum(m.total_doses or 0 for m in medications)
    taken = sum(m.taken_doses or 0 for m in medications)
    missed = sum(m.missed_doses or 0 for m in medications)
    rates = [m.adherence_rate or 0 for m in medications]

    return {
        'total_medications': len(medications),
        'total_doses': total,
        'taken_doses': taken,
        'missed_doses': missed,
        'adherence_rate': round(taken / total * 100, 2) if total else 0,
        'average_adherence': round(sum(rates) / len(rates), 2) if rates else 0
    }
