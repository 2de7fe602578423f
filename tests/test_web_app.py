import re
import tempfile
import unittest
from unittest import mock
from datetime import datetime, timezone
from pathlib import Path

from fakes import RecordingMailer
from room_reservation import Role, auth
from room_reservation.admission import MSG_PRIVILEGED_CONFLICT, MSG_REQUEST_PERMISSION
from room_reservation.web_app import create_app
from room_reservation.yaml_store import ReservationStorageError

NOW = datetime(2026, 3, 2, 8, 0)
PASSWORD = "correct-horse"


class WebAppTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.mailer = RecordingMailer()
        self.app = create_app(
            Path(self._temp_dir.name) / "data",
            now_provider=lambda: NOW,
            config={"TESTING": True, "SECRET_KEY": "test-secret", "BASE_URL": "http://rooms.test/"},
            mailer=self.mailer,
        )
        self.services = self.app.extensions["room_reservation"]
        self.repo = self.services.repository
        self.room = self.repo.add_room("Lab 201", capacity=20, floor=2)
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        self.services.dispatcher.wait_idle(timeout=5)
        self.services.dispatcher.shutdown()
        self._temp_dir.cleanup()

    def make_user(self, name: str, role: Role):
        user = auth.register(self.repo, f"{name}@example.com", PASSWORD, name.title(), "Tester", now=NOW)
        if role is not Role.USER:
            user = self.repo.update_user_role(user.user_id, role)
        return user

    def login_as(self, user) -> None:
        self.client.post("/auth/logout")
        response = self.client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
        self.assertEqual(response.status_code, 200, response.get_json())

    def book(self, start: str, end: str, **extra):
        payload = {"roomId": self.room.room_id, "startTime": start, "endTime": end, "purpose": "Lecture", **extra}
        return self.client.post("/api/reservations", json=payload)


class TestAccounts(WebAppTestCase):
    def test_register_login_logout(self) -> None:
        response = self.client.post(
            "/auth/register",
            json={"email": "New@Example.com", "password": PASSWORD, "firstName": "Yu", "lastName": "Na"},
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["user"]["role"], "user")
        self.assertEqual(self.client.get("/api/rooms").status_code, 200)

        self.client.post("/auth/logout")
        self.assertEqual(self.client.get("/api/rooms").status_code, 401)

        response = self.client.post("/auth/login", json={"email": "new@example.com", "password": "nope"})
        self.assertEqual(response.status_code, 401)
        self.assertFalse(response.get_json()["success"])

    def test_register_accepts_form_data(self) -> None:
        response = self.client.post(
            "/auth/register",
            data={"email": "form@example.com", "password": PASSWORD, "firstName": "Fo", "lastName": "Rm"},
        )
        self.assertEqual(response.status_code, 201)

    def test_lockout_returns_423(self) -> None:
        user = self.make_user("locked", Role.USER)
        for _ in range(auth.MAX_LOGIN_ATTEMPTS):
            self.client.post("/auth/login", json={"email": user.email, "password": "wrong"})

        response = self.client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
        self.assertEqual(response.status_code, 423)

    def test_email_two_factor_login(self) -> None:
        user = self.make_user("guarded", Role.STUDENT)
        self.login_as(user)
        self.assertEqual(self.client.post("/api/2fa", json={"intent": "enable-email"}).status_code, 200)
        self.client.post("/auth/logout")

        response = self.client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
        payload = response.get_json()
        self.assertTrue(payload["requires2FA"])
        self.assertEqual(payload["method"], "email")
        self.assertEqual(self.client.get("/api/rooms").status_code, 401)

        self.client.post("/api/2fa-verify", json={"intent": "send-code", "userId": user.user_id})
        self.services.dispatcher.wait_idle(timeout=5)
        code = re.search(r"verification code is: (\d{6})", self.mailer.sent[-1].text).group(1)

        wrong = self.client.post("/api/2fa-verify", json={"intent": "verify", "userId": user.user_id, "code": "000000"})
        self.assertEqual(wrong.status_code, 400)

        response = self.client.post("/api/2fa-verify", json={"intent": "verify", "userId": user.user_id, "code": code})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/api/rooms").status_code, 200)

    def test_two_factor_setup_payload(self) -> None:
        self.login_as(self.make_user("setup", Role.USER))
        payload = self.client.get("/api/2fa").get_json()
        self.assertIn("otpauth://", payload["provisioningUri"])


class TestReservations(WebAppTestCase):
    def test_student_books_and_shares(self) -> None:
        self.login_as(self.make_user("student", Role.STUDENT))

        response = self.book("2026-03-02T10:00", "2026-03-02T11:00")
        self.assertEqual(response.status_code, 200)
        reservation = response.get_json()["reservation"]
        self.assertEqual(reservation["roomName"], "Lab 201")
        self.assertEqual(reservation["attendees"], 1)

        listed = self.client.get("/api/reservations").get_json()["reservations"]
        self.assertEqual([item["id"] for item in listed], [reservation["id"]])

        self.services.dispatcher.wait_idle(timeout=5)
        self.assertIn(f"http://rooms.test/reservations/join/{reservation['shareToken']}", self.mailer.sent[0].text)

        self.client.post("/auth/logout")
        shared = self.client.get(f"/api/reservations/join/{reservation['shareToken']}").get_json()["reservation"]
        self.assertEqual(shared["ownerName"], "Student Tester")
        self.assertNotIn("shareToken", shared)
        self.assertEqual(self.client.get("/api/reservations/join/unknown").status_code, 404)

    def test_user_role_is_told_to_request_permission(self) -> None:
        self.login_as(self.make_user("visitor", Role.USER))
        response = self.book("2026-03-02T10:00", "2026-03-02T11:00")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["error"], MSG_REQUEST_PERMISSION)

    def test_invalid_inputs(self) -> None:
        self.login_as(self.make_user("student", Role.STUDENT))

        self.assertEqual(self.book("2026-03-02T10:00", "2026-03-02T10:10").status_code, 400)
        self.assertEqual(self.book("tomorrow", "2026-03-02T11:00").get_json()["error"], "Invalid date format")
        missing = self.client.post("/api/reservations", json={"roomId": self.room.room_id})
        self.assertEqual(missing.get_json()["error"], "Missing required fields")
        self.assertEqual(self.book("2026-03-02T10:00", "2026-03-02T11:00", roomId=404).status_code, 404)

    def test_override_over_http(self) -> None:
        standard = self.make_user("standard", Role.INSTRUCTOR)
        privileged = self.make_user("privileged", Role.INSTRUCTOR)
        other = self.make_user("other", Role.INSTRUCTOR)
        self.repo.grant_override_permission(privileged.user_id, now=NOW)
        self.repo.grant_override_permission(other.user_id, now=NOW)

        self.login_as(standard)
        first = self.book("2026-03-02T10:00", "2026-03-02T11:00").get_json()["reservation"]

        self.login_as(privileged)
        response = self.book("2026-03-02T10:00", "2026-03-02T11:00")
        self.assertEqual(response.get_json()["overridden"], [first["id"]])

        self.login_as(other)
        response = self.book("2026-03-02T10:30", "2026-03-02T11:30")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], MSG_PRIVILEGED_CONFLICT)

    def test_cancel_endpoint(self) -> None:
        owner = self.make_user("owner", Role.STUDENT)
        self.login_as(owner)
        reservation = self.book("2026-03-02T10:00", "2026-03-02T11:00").get_json()["reservation"]

        self.login_as(self.make_user("stranger", Role.STUDENT))
        self.assertEqual(self.client.post(f"/api/reservations/{reservation['id']}/cancel").status_code, 403)

        self.login_as(owner)
        response = self.client.post(f"/api/reservations/{reservation['id']}/cancel")
        self.assertEqual(response.get_json()["reservation"]["status"], "cancelled")

    def test_cancelled_reservation_is_no_longer_shared(self) -> None:
        self.login_as(self.make_user("owner", Role.STUDENT))
        reservation = self.book("2026-03-02T10:00", "2026-03-02T11:00").get_json()["reservation"]
        self.client.post(f"/api/reservations/{reservation['id']}/cancel")

        response = self.client.get(f"/api/reservations/join/{reservation['shareToken']}")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "Reservation not found")
        self.assertEqual(self.client.post(f"/api/reservations/join/{reservation['shareToken']}").status_code, 404)

    def test_utc_designator_is_accepted(self) -> None:
        self.login_as(self.make_user("student", Role.STUDENT))

        response = self.book("2026-03-02T10:00:00Z", "2026-03-02T11:00:00Z")

        self.assertEqual(response.status_code, 200, response.get_json())
        expected = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
        self.assertEqual(response.get_json()["reservation"]["startTime"], expected.isoformat(timespec="minutes"))

    def test_store_failure_returns_generic_500(self) -> None:
        self.login_as(self.make_user("student", Role.STUDENT))
        stage = self.repo._stage_yaml_list

        def stage_or_fail(path, rows):
            if path.name == "notifications.yaml":
                raise ReservationStorageError(f"Failed to write YAML file: {path}")
            return stage(path, rows)

        with mock.patch.object(self.repo, "_stage_yaml_list", side_effect=stage_or_fail):
            with self.assertLogs("room_reservation.admission", level="ERROR"):
                response = self.book("2026-03-02T10:00", "2026-03-02T11:00")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"success": False, "error": "Failed to save reservation"})
        self.assertEqual(self.client.get("/api/reservations").get_json()["reservations"], [])

    def test_update_invite_and_join(self) -> None:
        owner = self.make_user("owner", Role.INSTRUCTOR)
        guest = self.make_user("guest", Role.STUDENT)
        self.login_as(owner)
        reservation = self.book("2026-03-02T10:00", "2026-03-02T11:00").get_json()["reservation"]
        self.book("2026-03-02T12:00", "2026-03-02T13:00")

        response = self.client.post(
            f"/api/reservations/{reservation['id']}/update",
            json={"startTime": "2026-03-02T10:30", "endTime": "2026-03-02T11:30", "attendees": 5},
        )
        self.assertEqual(response.status_code, 200, response.get_json())
        updated = response.get_json()["reservation"]
        self.assertEqual(updated["startTime"], "2026-03-02T10:30")
        self.assertEqual(updated["attendees"], 5)
        self.assertEqual(updated["purpose"], "Lecture")

        clash = self.client.post(
            f"/api/reservations/{reservation['id']}/update",
            json={"startTime": "2026-03-02T11:30", "endTime": "2026-03-02T12:30"},
        )
        self.assertEqual(clash.status_code, 400)

        self.assertEqual(self.client.post(f"/api/reservations/{reservation['id']}/invite", json={}).status_code, 400)
        invited = self.client.post(
            f"/api/reservations/{reservation['id']}/invite", data={"userIds": f"{guest.user_id}"}
        ).get_json()
        self.assertEqual(invited["invited"], [guest.user_id])

        self.login_as(guest)
        forbidden = self.client.post(
            f"/api/reservations/{reservation['id']}/update",
            json={"startTime": "2026-03-02T14:00", "endTime": "2026-03-02T15:00"},
        )
        self.assertEqual(forbidden.status_code, 403)

        token = reservation["shareToken"]
        joined = self.client.post(f"/api/reservations/join/{token}").get_json()
        self.assertEqual(joined["message"], "Attendance confirmed")
        again = self.client.post(f"/api/reservations/join/{token}").get_json()
        self.assertEqual(again["message"], "Already confirmed")
        shared = self.client.get(f"/api/reservations/join/{token}").get_json()["reservation"]
        self.assertEqual(shared["attendeeCount"], 1)

        self.login_as(owner)
        self.assertEqual(
            self.client.post(f"/api/reservations/join/{token}").get_json()["message"], "You are the organizer"
        )
        types = [item.type for item in self.repo.list_notifications(owner.user_id)]
        self.assertIn("attendee_joined", types)
        self.assertIn("reservation_updated", types)
        self.assertIn("reservation_invite", [item.type for item in self.repo.list_notifications(guest.user_id)])


class TestRequestsAndAdmin(WebAppTestCase):
    def test_request_approval_flow(self) -> None:
        visitor = self.make_user("visitor", Role.USER)
        admin = self.make_user("admin", Role.ADMIN)

        self.login_as(visitor)
        response = self.client.post(
            "/api/reservation-requests",
            json={
                "intent": "create",
                "roomId": self.room.room_id,
                "startTime": "2026-03-02T10:00",
                "endTime": "2026-03-02T11:00",
                "purpose": "Club meeting",
            },
        )
        request_id = response.get_json()["request"]["id"]
        self.assertEqual(self.client.get("/api/admin/permission-requests").status_code, 403)

        self.login_as(admin)
        pending = self.client.get("/api/admin/permission-requests").get_json()["requests"]
        self.assertEqual([item["id"] for item in pending], [request_id])

        response = self.client.post("/api/admin/permission-requests", json={"intent": "approve", "requestId": request_id})
        self.assertTrue(response.get_json()["success"])

        again = self.client.post("/api/admin/permission-requests", json={"intent": "approve", "requestId": request_id})
        self.assertEqual(again.status_code, 404)

        self.login_as(visitor)
        requests = self.client.get("/api/reservation-requests").get_json()["requests"]
        self.assertEqual(requests[0]["status"], "approved")
        notifications = self.client.get("/api/notifications").get_json()
        self.assertEqual(notifications["unreadCount"], 1)

    def test_reject_requires_note(self) -> None:
        visitor = self.make_user("visitor", Role.USER)
        request = self.repo.add_request(
            visitor.user_id, self.room.room_id, datetime(2026, 3, 2, 10), datetime(2026, 3, 2, 11), "Study", now=NOW
        )
        self.login_as(self.make_user("admin", Role.ADMIN))

        response = self.client.post(
            "/api/admin/permission-requests", json={"intent": "reject", "requestId": request.request_id}
        )
        self.assertEqual(response.status_code, 400)

        response = self.client.post(
            "/api/admin/permission-requests",
            json={"intent": "reject", "requestId": request.request_id, "reviewNote": "Exam week"},
        )
        self.assertEqual(response.status_code, 200)

    def test_notifications_intents(self) -> None:
        user = self.make_user("reader", Role.USER)
        for index in range(3):
            self.repo.add_notification(user.user_id, "reservation_confirmed", f"n{index}", "body", now=NOW)
        self.login_as(user)

        listed = self.client.get("/api/notifications?limit=2").get_json()
        self.assertEqual(len(listed["notifications"]), 2)
        self.assertEqual(listed["unreadCount"], 3)

        first_id = listed["notifications"][0]["id"]
        self.client.post("/api/notifications", json={"intent": "markAsRead", "notificationId": first_id})
        unread = self.client.get("/api/notifications?unreadOnly=true").get_json()
        self.assertEqual(unread["unreadCount"], 2)

        self.client.post("/api/notifications", json={"intent": "delete", "notificationId": first_id})
        self.client.post("/api/notifications", json={"intent": "deleteAll"})
        self.assertEqual(self.client.get("/api/notifications").get_json()["notifications"], [])
        self.assertEqual(self.client.post("/api/notifications", json={"intent": "explode"}).status_code, 400)

    def test_system_settings(self) -> None:
        self.login_as(self.make_user("admin", Role.ADMIN))

        bad = self.client.post(
            "/api/admin/system-settings", json={"minReservationMinutes": 10, "maxReservationMinutes": 120}
        )
        self.assertEqual(bad.status_code, 400)

        ok = self.client.post(
            "/api/admin/system-settings", json={"minReservationMinutes": 15, "maxReservationMinutes": 60}
        )
        self.assertEqual(ok.status_code, 200)
        settings = self.client.get("/api/admin/system-settings").get_json()
        self.assertEqual(settings, {"minReservationMinutes": 15, "maxReservationMinutes": 60})

    def test_grant_and_revoke_instructor_permission(self) -> None:
        instructor = self.make_user("teacher", Role.INSTRUCTOR)
        self.login_as(self.make_user("admin", Role.ADMIN))

        response = self.client.post(
            "/api/admin/instructor-permissions", json={"intent": "grant", "instructorId": instructor.user_id}
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(self.repo.get_override_permission(instructor.user_id))

        listed = self.client.get("/api/admin/instructor-permissions").get_json()["instructors"]
        self.assertTrue(listed[0]["canOverride"])
        self.assertEqual(self.repo.list_notifications(instructor.user_id)[0].type, "permission_granted")

        response = self.client.post(
            "/api/admin/instructor-permissions", json={"intent": "revoke", "instructorId": instructor.user_id}
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(self.repo.get_override_permission(instructor.user_id))

        self.services.dispatcher.wait_idle(timeout=5)
        self.assertEqual(self.mailer.subjects_for(instructor.email), ["QueueForRoom: New Permission"])

    def test_user_role_and_room_updates(self) -> None:
        user = self.make_user("promoted", Role.USER)
        self.login_as(self.make_user("admin", Role.ADMIN))

        response = self.client.post("/api/admin/users", json={"userId": user.user_id, "role": "student"})
        self.assertEqual(response.get_json()["user"]["role"], "student")
        self.assertEqual(
            self.client.post("/api/admin/users", json={"userId": user.user_id, "role": "root"}).status_code, 400
        )

        response = self.client.post(f"/api/admin/rooms/{self.room.room_id}", json={"isAvailable": False})
        self.assertFalse(response.get_json()["room"]["isAvailable"])
        self.assertEqual(self.client.get("/api/rooms").get_json()["rooms"], [])
        self.assertEqual(self.client.post("/api/admin/rooms/99", json={"name": "X"}).status_code, 404)


class TestOperations(WebAppTestCase):
    def test_health(self) -> None:
        payload = self.client.get("/api/health").get_json()
        self.assertEqual(payload["status"], "ok")

    def test_cli_commands(self) -> None:
        runner = self.app.test_cli_runner()

        result = runner.invoke(args=["seed-rooms", "--count", "3"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(len(self.repo.list_rooms()), 4)

        user = self.make_user("cli", Role.USER)
        result = runner.invoke(args=["set-role", user.email, "instructor"])
        self.assertEqual(result.exit_code, 0, result.output)
        result = runner.invoke(args=["grant-override", user.email])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertTrue(self.repo.get_override_permission(user.user_id))

        result = runner.invoke(args=["grant-override", "missing@example.com"])
        self.assertNotEqual(result.exit_code, 0)


if __name__ == "__main__":
    unittest.main()
