from .booking import (
	ROLE_CAPABILITIES,
	OverrideOutcome,
	Reservation,
	ReservationLimits,
	Role,
	can_reserve,
	capabilities_for,
	has_time_overlap,
	resolve_conflicts,
	validate_limits,
)
from .admission import (
	AdmissionError,
	AdmissionResult,
	ReservationAdmissionController,
	ReservationProposal,
)
from .mailer import Mailer, SmtpMailer, SmtpSettings
from .notifications import EmailDispatcher, NotificationWriter
from .yaml_store import (
	ReservationRecord,
	ReservationStorageError,
	ReservationYamlRepository,
	RoomRecord,
	UserRecord,
)

__all__ = [
	"ROLE_CAPABILITIES",
	"OverrideOutcome",
	"Reservation",
	"ReservationLimits",
	"Role",
	"can_reserve",
	"capabilities_for",
	"has_time_overlap",
	"resolve_conflicts",
	"validate_limits",
	"AdmissionError",
	"AdmissionResult",
	"ReservationAdmissionController",
	"ReservationProposal",
	"Mailer",
	"SmtpMailer",
	"SmtpSettings",
	"EmailDispatcher",
	"NotificationWriter",
	"ReservationRecord",
	"ReservationStorageError",
	"ReservationYamlRepository",
	"RoomRecord",
	"UserRecord",
]
