import sys
import tempfile
import threading
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest import mock

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

import support
from support import BOARD, MEMBER, FakeGateway

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from member_intranet.db.base import Base
from member_intranet.exceptions import MailQueueError, NotFoundError, PermissionDeniedError, ValidationError
from member_intranet.models.intranet_models import MassMailJob, MassMailRecipient
from member_intranet.scheduler import MailQueueScheduler
from member_intranet.services import mass_mail_service


def _recipients(count, domain="example.org"):
    return [
        {"email": f"member{index:03d}@{domain}", "firstName": f"First{index}", "lastName": f"Last{index}"}
        for index in range(count)
    ]


class PlaceholderTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = support.content_sessionmaker()
        self.db = self.Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_member_tokens_are_replaced(self):
        body = "{Anrede},\n{Vorname} {Nachname} is invited to {Event_Name}."
        rendered = mass_mail_service.apply_placeholders(body, "Anna", "Schmidt", "Spring Meetup")
        self.assertEqual(rendered, "Hallo Anna,\nAnna Schmidt is invited to Spring Meetup.")

    def test_salutation_without_first_name(self):
        self.assertEqual(mass_mail_service.apply_placeholders("{Anrede}!", "", "Schmidt", ""), "Hallo!")

    def test_event_tokens_use_german_names(self):
        event = support.add_event(
            self.db,
            "Spring Meetup",
            datetime(2025, 3, 14, 18, 30),
            location="Room 101",
            link="https://example.org/register",
        )
        body = "{eventDateDay}, {eventDateDayOf}. {eventDateMonth} at {EventDateHour} in {location}: {trainingLink}"
        rendered = mass_mail_service.apply_placeholders(body, "Anna", "", event.Title, event)
        self.assertEqual(rendered, "Freitag, 14. März at 18:30 in Room 101: https://example.org/register")

    def test_event_tokens_stay_when_no_event_is_attached(self):
        rendered = mass_mail_service.apply_placeholders("{eventDateDay} {location}", "Anna", "", "")
        self.assertEqual(rendered, "{eventDateDay} {location}")

    def test_rendered_mail_is_escaped_html(self):
        gateway = FakeGateway()
        mass_mail_service.send_mass_mail(
            self.db, BOARD, gateway, "News", "<b>Hi</b> {Vorname}\nsee you", _recipients(1)
        )
        html_body = gateway.sent[0]["html"]
        self.assertIn("&lt;b&gt;Hi&lt;/b&gt; First0<br>see you", html_body)
        self.assertNotIn("<b>Hi</b>", html_body)


class RecipientCollectionTests(unittest.TestCase):
    def setUp(self):
        self.user_engine, self.UserSession = support.user_sessionmaker()
        self.user_db = self.UserSession()
        support.add_member(self.user_db, 10, "anna@example.org", "Anna", "Schmidt")
        support.add_member(self.user_db, 11, "ben@example.org", "Ben", None)
        support.add_member(self.user_db, 12, "gone@example.org", "Gone", "Member", active=False)

    def tearDown(self):
        self.user_db.close()
        self.user_engine.dispose()

    def test_csv_rows_skip_invalid_addresses(self):
        rows = mass_mail_service.parse_recipients_csv("a@example.org,Ann,Lee\nnot-an-email,X,Y\n\nb@example.org\n")
        self.assertEqual(
            rows,
            [
                {"email": "a@example.org", "firstName": "Ann", "lastName": "Lee"},
                {"email": "b@example.org", "firstName": "", "lastName": ""},
            ],
        )

    def test_csv_and_members_are_merged_without_duplicates(self):
        recipients = mass_mail_service.collect_recipients(
            self.user_db,
            raw_csv="ANNA@example.org,Anna,S.\nextern@example.org,Eve,Extern\n",
            user_ids=[10, 11, 12, 99],
        )
        self.assertEqual(
            [row["email"] for row in recipients],
            ["ANNA@example.org", "extern@example.org", "ben@example.org"],
        )


class MassMailQueueTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = support.content_sessionmaker()
        self.db = self.Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _assert_counts_consistent(self, job_id):
        job = mass_mail_service.get_job(self.db, job_id)
        self.assertEqual(job["sentCount"] + job["failedCount"] + job["pendingCount"], job["totalRecipients"])
        return job

    def test_small_list_is_sent_directly_without_a_job(self):
        recipients = _recipients(3)
        gateway = FakeGateway(failing=[recipients[1]["email"]])
        result = mass_mail_service.send_mass_mail(self.db, BOARD, gateway, "Hello", "{Anrede}", recipients)

        self.assertFalse(result["queued"])
        self.assertIsNone(result["jobID"])
        self.assertEqual((result["sent"], result["failed"]), (2, 1))
        self.assertEqual(len(gateway.attempts), 3)
        self.assertEqual(self.db.execute(select(func.count(MassMailJob.JobID))).scalar_one(), 0)

    def test_large_list_is_sent_in_batches_until_completed(self):
        gateway = FakeGateway()
        before = datetime.now()
        first = mass_mail_service.send_mass_mail(self.db, BOARD, gateway, "Invitation", "{Anrede}", _recipients(450))

        self.assertTrue(first["queued"])
        self.assertEqual((first["sent"], first["pending"], first["status"]), (200, 250, "paused"))
        job_id = first["jobID"]
        job = self._assert_counts_consistent(job_id)
        self.assertGreaterEqual(job["nextRunAt"], before + timedelta(minutes=59))

        second = mass_mail_service.resume_job(self.db, BOARD, gateway, job_id)
        self.assertEqual((second["sent"], second["pending"], second["status"]), (200, 50, "paused"))
        self._assert_counts_consistent(job_id)

        third = mass_mail_service.resume_job(self.db, BOARD, gateway, job_id)
        self.assertEqual((third["sent"], third["pending"], third["status"]), (50, 0, "completed"))
        job = self._assert_counts_consistent(job_id)
        self.assertIsNotNone(job["completedAt"])
        self.assertIsNone(job["nextRunAt"])

        again = mass_mail_service.resume_job(self.db, BOARD, gateway, job_id)
        self.assertEqual((again["sent"], again["failed"], again["status"]), (0, 0, "completed"))

        self.assertEqual(len(gateway.attempts), 450)
        self.assertEqual(len(set(gateway.attempts)), 450)
        self.assertEqual(gateway.attempts[0], "member000@example.org")

    def test_failed_recipients_are_counted_and_never_resent(self):
        recipients = _recipients(250)
        broken = {recipients[0]["email"], recipients[210]["email"]}
        refused = {recipients[5]["email"]}
        gateway = FakeGateway(failing=refused, raising=broken)

        first = mass_mail_service.send_mass_mail(self.db, BOARD, gateway, "Invitation", "{Anrede}", recipients)
        self.assertEqual((first["sent"], first["failed"], first["pending"]), (198, 2, 50))

        second = mass_mail_service.resume_job(self.db, BOARD, gateway, first["jobID"])
        self.assertEqual((second["sent"], second["failed"], second["status"]), (49, 1, "completed"))
        job = self._assert_counts_consistent(first["jobID"])
        self.assertEqual(job["failedCount"], 3)
        self.assertEqual(len(gateway.attempts), 250)

        failed_rows = self.db.execute(
            select(MassMailRecipient.Email).where(MassMailRecipient.Status == "failed")
        ).scalars().all()
        self.assertEqual(set(failed_rows), broken | refused)

    def test_unexpected_gateway_errors_fail_only_that_recipient(self):
        recipients = _recipients(3)
        gateway = FakeGateway(crashing=[recipients[1]["email"]])
        result = mass_mail_service.send_mass_mail(self.db, BOARD, gateway, "Hello", "{Anrede}", recipients)
        self.assertEqual((result["sent"], result["failed"]), (2, 1))
        self.assertEqual(len(gateway.attempts), 3)

        recipients = _recipients(250, domain="example.net")
        gateway = FakeGateway(crashing=[recipients[5]["email"]])
        first = mass_mail_service.send_mass_mail(self.db, BOARD, gateway, "Invitation", "{Anrede}", recipients)
        self.assertEqual((first["sent"], first["failed"], first["pending"]), (199, 1, 50))

        second = mass_mail_service.resume_job(self.db, BOARD, gateway, first["jobID"])
        self.assertEqual((second["sent"], second["failed"], second["status"]), (50, 0, "completed"))
        self._assert_counts_consistent(first["jobID"])
        self.assertEqual(gateway.attempts.count(recipients[5]["email"]), 1)

    def test_recipients_taken_over_by_another_runner_are_skipped(self):
        gateway = FakeGateway()
        first = mass_mail_service.send_mass_mail(self.db, BOARD, gateway, "Invitation", "{Anrede}", _recipients(230))
        job_id = first["jobID"]
        claim_batch = mass_mail_service._claim_batch
        taken_over = []

        def claim_then_lose_some(db, claim_job_id, batch_size):
            token, rows = claim_batch(db, claim_job_id, batch_size)
            taken_over.extend(row.RecipientID for row in rows[:10])
            db.execute(
                update(MassMailRecipient)
                .where(MassMailRecipient.RecipientID.in_(taken_over))
                .values(ClaimToken="other-runner", ClaimedAt=datetime.now())
            )
            db.commit()
            return token, rows

        with mock.patch.object(mass_mail_service, "_claim_batch", side_effect=claim_then_lose_some):
            second = mass_mail_service.resume_job(self.db, BOARD, gateway, job_id)

        self.assertEqual((second["sent"], second["pending"], second["status"]), (20, 10, "paused"))
        skipped = self.db.execute(
            select(MassMailRecipient.Email).where(MassMailRecipient.RecipientID.in_(taken_over))
        ).scalars().all()
        self.assertFalse(set(skipped) & set(gateway.attempts))
        self._assert_counts_consistent(job_id)

    def test_scheduled_run_only_picks_up_elapsed_jobs(self):
        gateway = FakeGateway()
        first = mass_mail_service.send_mass_mail(self.db, BOARD, gateway, "Invitation", "{Anrede}", _recipients(260))

        self.assertEqual(mass_mail_service.process_due_jobs(self.db, gateway), [])
        results = mass_mail_service.process_due_jobs(self.db, gateway, now=datetime.now() + timedelta(minutes=61))
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0]["jobID"], first["jobID"])
        self.assertEqual(results[0]["status"], "completed")
        self.assertEqual(len(gateway.attempts), 260)

    def test_claimed_recipients_are_not_claimed_twice(self):
        gateway = FakeGateway()
        first = mass_mail_service.send_mass_mail(
            self.db, BOARD, gateway, "Invitation", "{Anrede}", _recipients(230), batch_size=200
        )
        job_id = first["jobID"]

        _, claimed = mass_mail_service._claim_batch(self.db, job_id, 20)
        self.assertEqual(len(claimed), 20)
        _, rival = mass_mail_service._claim_batch(self.db, job_id, 20)
        self.assertEqual(len(rival), 10)
        self.assertFalse({row.RecipientID for row in claimed} & {row.RecipientID for row in rival})

        _, nothing = mass_mail_service._claim_batch(self.db, job_id, 20)
        self.assertEqual(nothing, [])

        self.db.execute(
            update(MassMailRecipient)
            .where(MassMailRecipient.RecipientID.in_([row.RecipientID for row in claimed]))
            .values(ClaimedAt=datetime.now() - timedelta(hours=2))
        )
        self.db.commit()
        _, reclaimed = mass_mail_service._claim_batch(self.db, job_id, 50)
        self.assertEqual({row.RecipientID for row in reclaimed}, {row.RecipientID for row in claimed})

    def test_queue_creation_failure_rolls_back(self):
        gateway = FakeGateway()
        with mock.patch.object(self.db, "add_all", side_effect=SQLAlchemyError("disk full")):
            with self.assertRaises(MailQueueError):
                mass_mail_service.send_mass_mail(self.db, BOARD, gateway, "Invitation", "{Anrede}", _recipients(201))

        self.assertEqual(self.db.execute(select(func.count(MassMailJob.JobID))).scalar_one(), 0)
        self.assertEqual(gateway.attempts, [])

    def test_input_is_validated_before_sending(self):
        gateway = FakeGateway()
        with self.assertRaises(PermissionDeniedError):
            mass_mail_service.send_mass_mail(self.db, MEMBER, gateway, "Hi", "Body", _recipients(1))
        with self.assertRaises(ValidationError):
            mass_mail_service.send_mass_mail(self.db, BOARD, gateway, " ", "Body", _recipients(1))
        with self.assertRaises(ValidationError):
            mass_mail_service.send_mass_mail(self.db, BOARD, gateway, "Hi", "Body", [])
        with self.assertRaises(NotFoundError):
            mass_mail_service.send_mass_mail(self.db, BOARD, gateway, "Hi", "Body", _recipients(1), event_id=42)
        with self.assertRaises(NotFoundError):
            mass_mail_service.resume_job(self.db, BOARD, gateway, 42)
        self.assertEqual(gateway.attempts, [])

    def test_event_name_is_stored_with_the_job(self):
        event = support.add_event(self.db, "General Assembly", datetime(2025, 6, 2, 19, 0), location="Hall")
        gateway = FakeGateway()
        first = mass_mail_service.send_mass_mail(
            self.db, BOARD, gateway, "Assembly", "{Event_Name} on {eventDateDay}", _recipients(201), event_id=event.EventID
        )
        job = mass_mail_service.get_job(self.db, first["jobID"])
        self.assertEqual(job["eventName"], "General Assembly")
        self.assertIn("General Assembly on Montag", gateway.sent[0]["html"])
        self.assertEqual([row["jobID"] for row in mass_mail_service.list_jobs(self.db, "paused")], [first["jobID"]])
        self.assertEqual(mass_mail_service.list_jobs(self.db, "completed"), [])


class ConcurrentResumeTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.engine, self.Session = support.file_sessionmaker(Path(self.tmpdir.name) / "queue.db", Base.metadata)
        self.gateway = FakeGateway()
        with self.Session() as db:
            self.job_id = mass_mail_service.send_mass_mail(
                db, BOARD, self.gateway, "Invitation", "{Anrede}", _recipients(450)
            )["jobID"]

    def tearDown(self):
        self.engine.dispose()
        self.tmpdir.cleanup()

    def test_two_simultaneous_resumes_never_send_twice(self):
        barrier = threading.Barrier(2)
        errors = []

        def resume():
            db = self.Session()
            try:
                barrier.wait(timeout=10)
                mass_mail_service.resume_job(db, BOARD, self.gateway, self.job_id)
            except Exception as exc:
                errors.append(exc)
            finally:
                db.close()

        threads = [threading.Thread(target=resume) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        self.assertEqual(errors, [])
        self.assertEqual(len(self.gateway.attempts), len(set(self.gateway.attempts)))
        with self.Session() as db:
            job = mass_mail_service.get_job(db, self.job_id)
            self.assertEqual(job["sentCount"] + job["failedCount"] + job["pendingCount"], 450)
            self.assertEqual(job["sentCount"], len(self.gateway.attempts))


class MailQueueSchedulerTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = support.content_sessionmaker()

    def tearDown(self):
        self.engine.dispose()

    def test_tick_advances_due_jobs(self):
        gateway = FakeGateway()
        with self.Session() as db:
            first = mass_mail_service.send_mass_mail(db, BOARD, gateway, "Invitation", "{Anrede}", _recipients(210))
            db.execute(update(MassMailJob).values(NextRunAt=datetime.now() - timedelta(minutes=1)))
            db.commit()

        scheduler = MailQueueScheduler(self.Session, gateway_factory=lambda: gateway, poll_seconds=60)
        results = scheduler.run_once()
        self.assertEqual([(row["jobID"], row["status"], row["sent"]) for row in results], [(first["jobID"], "completed", 10)])
        self.assertEqual(scheduler.run_once(), [])

        status = scheduler.status()
        self.assertFalse(status["running"])
        self.assertEqual(status["pollSeconds"], 60)
        self.assertIsNotNone(status["lastRun"])


if __name__ == "__main__":
    unittest.main()
