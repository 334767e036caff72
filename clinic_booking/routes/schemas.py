from datetime import date, datetime, time

from pydantic import BaseModel, computed_field, field_validator

from clinic_booking.services.slots import DaySlots, format_day_key, format_time_label, parse_day_key, parse_time_label

WEEKDAY_LABELS = ('MON', 'TUE', 'WED', 'THU', 'FRI', 'SAT', 'SUN')


class Address(BaseModel):
    line1: str = ''
    line2: str = ''


class DoctorResponse(BaseModel):
    id: int
    name: str
    email: str
    image: str | None = None
    speciality: str | None = None
    degree: str | None = None
    experience: str | None = None
    about: str | None = None
    fees: int
    address: Address | None = None
    available: bool
    window_start: time | None = None
    window_end: time | None = None

    class Config:
        from_attributes = True


class PatientProfileResponse(BaseModel):
    id: int
    name: str
    email: str
    phone: str | None = None
    address: Address | None = None
    gender: str | None = None
    dob: date | None = None
    image: str | None = None

    class Config:
        from_attributes = True


class AppointmentResponse(BaseModel):
    id: int
    doctor_id: int
    patient_id: int
    doctor_name: str | None = None
    patient_name: str | None = None
    slot_date: date
    slot_time: time
    amount: int
    cancelled: bool
    is_completed: bool
    payment: bool
    status: str
    created_at: datetime | None = None

    @computed_field
    @property
    def day_key(self) -> str:
        return format_day_key(self.slot_date)

    @computed_field
    @property
    def time_label(self) -> str:
        return format_time_label(self.slot_time)


class SlotResponse(BaseModel):
    date: date
    time: time
    day_key: str
    time_label: str
    starts_at: datetime


class DaySlotsResponse(BaseModel):
    date: date
    day_key: str
    weekday: str
    slots: list[SlotResponse]

    @classmethod
    def from_day(cls, day: DaySlots) -> 'DaySlotsResponse':
        return cls(
            date=day.slot_date,
            day_key=day.day_key,
            weekday=WEEKDAY_LABELS[day.slot_date.weekday()],
            slots=[
                SlotResponse(
                    date=slot.slot_date,
                    time=slot.slot_time,
                    day_key=slot.day_key,
                    time_label=slot.time_label,
                    starts_at=slot.starts_at,
                )
                for slot in day.slots
            ],
        )


class AvailableSlotsResponse(BaseModel):
    doctor_id: int
    available: bool
    fees: int
    days: list[DaySlotsResponse]


class SlotRequestMixin(BaseModel):
    """Accepts ISO values as well as the calendar's day keys and time labels."""

    slot_date: date
    slot_time: time

    @field_validator('slot_date', mode='before')
    @classmethod
    def parse_slot_date(cls, value):
        if isinstance(value, str) and '_' in value:
            return parse_day_key(value)
        return value

    @field_validator('slot_time', mode='before')
    @classmethod
    def parse_slot_time(cls, value):
        if isinstance(value, str) and value.strip()[-2:].upper() in {'AM', 'PM'}:
            return parse_time_label(value)
        return value
