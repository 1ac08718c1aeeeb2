from app import create_app
from circulation import approve, create_request
from extensions import db
from models import ROLE_ADMIN, ROLE_LIBRARIAN, ROLE_MEMBER, Book, Category, User
from notifications import record_book_history
from security import hash_password

app = create_app(start_jobs=False)

with app.app_context():
    # Reset the database
    db.drop_all()
    db.create_all()
    print("🔄 Database reset")

    # Insert Users
    users = [
        {"username": "admin", "first_name": "Admin", "last_name": "User", "email": "admin@example.com", "password": "admin123", "role": ROLE_ADMIN},
        {"username": "librarian", "first_name": "Libby", "last_name": "Rarian", "email": "librarian@example.com", "password": "librarian123", "role": ROLE_LIBRARIAN},
        {"username": "member1", "first_name": "Member", "last_name": "One", "email": "member1@example.com", "password": "member123", "role": ROLE_MEMBER},
        {"username": "member2", "first_name": "Member", "last_name": "Two", "email": "member2@example.com", "password": "member123", "role": ROLE_MEMBER},
    ]

    for u in users:
        user = User(username=u["username"], first_name=u["first_name"], last_name=u["last_name"],
                    email=u["email"], password=hash_password(u["password"]), role=u["role"])
        db.session.add(user)

    db.session.commit()
    print("✅ Users inserted")

    # Insert Categories
    categories = {}
    for name, description in [
        ("Programming", "Languages, tools and software craft"),
        ("Web", "Web development and frameworks"),
        ("Software", "Software engineering practice"),
        ("Science", "Natural sciences"),
    ]:
        categories[name] = Category(name=name, description=description)
        db.session.add(categories[name])

    db.session.commit()
    print("✅ Categories inserted")

    # Insert Books
    admin = User.query.filter_by(username="admin").first()
    books = [
        {"title": "Python Programming", "author": "John Zelle", "isbn": "9781590282410", "category": "Programming", "total_copies": 5, "published_year": 2017, "is_featured": True},
        {"title": "Flask Web Development", "author": "Miguel Grinberg", "isbn": "9781491991732", "category": "Web", "total_copies": 3, "published_year": 2018, "is_featured": False},
        {"title": "Clean Code", "author": "Robert C. Martin", "isbn": "9780132350884", "category": "Software", "total_copies": 2, "published_year": 2008, "is_featured": True},
        {"title": "A Brief History of Time", "author": "Stephen Hawking", "isbn": "9780553380163", "category": "Science", "total_copies": 4, "published_year": 1998, "is_featured": False},
    ]

    for b in books:
        book = Book(
            title=b["title"],
            author=b["author"],
            isbn=b["isbn"],
            category=categories[b["category"]],
            total_copies=b["total_copies"],
            available_copies=b["total_copies"],
            published_year=b["published_year"],
            is_featured=b["is_featured"],
        )
        db.session.add(book)
        db.session.flush()
        record_book_history(book, 'CREATED', admin.user_id, new_data=book.snapshot())

    db.session.commit()
    print("✅ Books inserted")

    # Insert a sample approved loan
    member = User.query.filter_by(email="member1@example.com").first()
    book = Book.query.filter_by(title="Python Programming").first()

    if member and book and book.available_copies > 0:
        borrow_request = create_request(member, book, app.config['LOAN_PERIOD_DAYS'])
        db.session.flush()
        approve(borrow_request, admin, 'Enjoy the book')
        db.session.commit()
        print(f"✅ Sample loan inserted, due {borrow_request.due_date.date()}")
    else:
        print("⚠️ Skipped sample loan")
