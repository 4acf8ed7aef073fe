from datetime import UTC, datetime, timedelta

from sqlmodel import Session, select

from db import engine
from models import Project, SiteSettings, TimeEntry, User, UserRole


def seed_database():
    """Seed the database with sample data."""
    with Session(engine) as session:
        # Check if data already exists
        existing = session.exec(select(Project)).first()
        if existing:
            print("Database already has data, skipping seed.")
            return

        admin = User(id="demo-admin", email="admin@example.com", display_name="Alice Johnson", role=UserRole.ADMIN)
        worker = User(id="demo-user", email="bob@example.com", display_name="Bob Smith", role=UserRole.USER)
        website = Project(name="Website redesign", description="New marketing site", created_by=admin.id)
        billing = Project(name="Billing", description="Invoice automation", created_by=admin.id)
        session.add_all([admin, worker, website, billing, SiteSettings()])
        session.flush()

        # Monday of the current week at 09:00 UTC
        today = datetime.now(UTC).replace(hour=9, minute=0, second=0, microsecond=0)
        monday = today - timedelta(days=today.weekday())

        def closed(user, project, task, day, start_h, hours, tags=()):
            start = monday + timedelta(days=day, hours=start_h)
            return TimeEntry(
                user_id=user.id,
                project_id=project.id,
                task=task,
                tags=list(tags),
                start_time=start,
                end_time=start + timedelta(hours=hours),
                duration=int(hours * 3600),
            )

        sample_entries = [
            closed(worker, website, "design", 0, 0, 3, ["ui"]),
            closed(worker, website, "design", 0, 4, 2.5, ["ui"]),
            closed(worker, billing, "invoices", 1, 0, 4),
            # Overlaps the entry above
            closed(worker, billing, "review", 1, 3.5, 1),
            closed(worker, website, "", 2, 0, 9.5),
            closed(admin, billing, "planning", 0, 1, 1),
        ]

        session.add_all(sample_entries)
        session.commit()
        print(f"Seeded database with {len(sample_entries)} sample entries.")


if __name__ == "__main__":
    from db import create_db_and_tables

    create_db_and_tables()
    seed_database()
