from campusbook import app, db
from campusbook.models import Department, User, Resource
from campusbook.auth import actor_for
from campusbook.service import BookingService
from campusbook.errors import BookingError
from werkzeug.security import generate_password_hash
from datetime import date, timedelta

def seed():
    with app.app_context():
        print("Seeding database...")

        departments = {}
        for name, code in [('Computer Science', 'CS'), ('Mathematics', 'MA'), ('Physics', 'PH')]:
            d = Department.query.filter_by(code=code).first()
            if not d:
                d = Department(name=name, code=code)
                db.session.add(d)
            departments[code] = d
        db.session.commit()
        print(f"Ensured {len(departments)} departments.")

        # Create Admin User if not exists
        if not User.query.filter_by(username='admin').first():
            db.session.add(User(username='admin', password_hash=generate_password_hash('admin'), role='admin', name='Administrator'))
            print("Created admin user.")

        codes = list(departments)
        for i in range(1, 4):
            username = f"teacher{i}"
            if not User.query.filter_by(username=username).first():
                db.session.add(User(
                    username=username,
                    password_hash=generate_password_hash('password'),
                    role='teacher',
                    name=f"Teacher {i}",
                    email=f"{username}@school.com",
                    department_id=departments[codes[i - 1]].id,
                ))
        for i in range(1, 7):
            username = f"student{i}"
            if not User.query.filter_by(username=username).first():
                db.session.add(User(
                    username=username,
                    password_hash=generate_password_hash('password'),
                    role='student',
                    name=f"Student {i}",
                    email=f"{username}@school.com",
                    department_id=departments[codes[(i - 1) % len(codes)]].id,
                ))
        db.session.commit()
        print(f"Users: {User.query.count()}")

        halls = [
            ('Main Auditorium', 'Block A', 500, ['projector', 'sound system', 'stage'], 'available'),
            ('Seminar Hall 1', 'Block B, 2nd floor', 120, ['projector', 'whiteboard'], 'available'),
            ('Open Air Theatre', 'Central lawn', 800, ['stage'], 'maintenance'),
        ]
        for name, location, capacity, amenities, status in halls:
            if not Resource.query.filter_by(name=name).first():
                db.session.add(Resource(name=name, location=location, capacity=capacity, amenities=amenities,
                                        status=status, created_by='admin'))
        db.session.commit()
        print(f"Resources: {Resource.query.count()}")

        main_hall = Resource.query.filter_by(name='Main Auditorium').first()
        day = (date.today() + timedelta(days=7)).isoformat()
        service = BookingService()
        requests = [
            ('admin', '09:00', '10:00', 'Orientation briefing', 300),
            ('teacher1', '10:30', '12:00', 'Department seminar', 90),
            ('student1', '13:00', '14:00', 'Club meetup', 40),
            ('student2', '13:30', '15:00', 'Debate practice', 25),
        ]
        for username, start, end, purpose, attendees in requests:
            user = User.query.filter_by(username=username).first()
            actor = actor_for(user)
            try:
                b = service.create_booking(actor, {
                    'resourceId': main_hall.id, 'date': day, 'startTime': start, 'endTime': end,
                    'purpose': purpose, 'attendees': attendees,
                })
                print(f"Booking {b.id} for {username}: {b.status}")
            except BookingError as e:
                print(f"Skipped booking for {username}: {e.message}")

        print("Seeding complete!")

if __name__ == "__main__":
    seed()
