from __future__ import annotations

from datetime import datetime
from pathlib import Path
import logging
import tempfile
import traceback

from room_reservation import (
    EmailDispatcher,
    ReservationAdmissionController,
    ReservationProposal,
    ReservationYamlRepository,
    Role,
    SmtpMailer,
    SmtpSettings,
)
from room_reservation.admission import ConflictError


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    print("[INFO] Room Reservation Quick Check")

    with tempfile.TemporaryDirectory() as temp_dir:
        data_dir = Path(temp_dir) / "data"
        repo = ReservationYamlRepository(data_dir)
        dispatcher = EmailDispatcher()
        controller = ReservationAdmissionController(repo, SmtpMailer(SmtpSettings(enabled=False)), dispatcher)
        now = datetime(2026, 3, 2, 8, 0)

        room = repo.add_room("Lab 201", capacity=20, floor=2)
        standard = repo.add_user("standard@example.com", "-", "Standard", "Instructor", role=Role.INSTRUCTOR, now=now)
        privileged = repo.add_user("privileged@example.com", "-", "Privileged", "Instructor", role=Role.INSTRUCTOR, now=now)
        student = repo.add_user("student@example.com", "-", "Some", "Student", role=Role.STUDENT, now=now)
        repo.grant_override_permission(privileged.user_id, now=now)

        proposal = ReservationProposal(room.room_id, datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0))
        limits = repo.get_reservation_limits()

        first = controller.admit(standard, proposal, limits, now=now)
        print(f"[OK] Standard instructor booked reservation #{first.reservation.reservation_id}")

        second = controller.admit(privileged, proposal, limits, now=now)
        print(f"[OK] Privileged instructor overrode {len(second.overridden)} reservation(s)")

        try:
            controller.admit(student, proposal, limits, now=now)
        except ConflictError as error:
            print(f"[OK] Student booking rejected: {error.message}")
        else:
            raise AssertionError("student booking should have been rejected")

        dispatcher.wait_idle(timeout=10)
        dispatcher.shutdown()
        print(f"[OK] Events logged: {len(repo.get_events())}")
        print(f"[OK] Data directory: {data_dir.resolve()}")

    print("[DONE] Quick check completed successfully.")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except Exception:
        print("[ERROR] Quick check failed.")
        traceback.print_exc()
        raise SystemExit(1)
