"""Tests for AdapterEngine over the in-memory backend."""

import gc
import itertools
from unittest.mock import AsyncMock

import pytest

from model_adapter.adapters.base import QueryOptions
from model_adapter.adapters.engine import (
    AdapterEngine,
    LinkModel,
    engine_for,
    link_key,
    link_table_name,
)
from model_adapter.adapters.memory import MemoryBackend
from model_adapter.errors import (
    MissingKey,
    NotRegistered,
    SchemaError,
    UnhandledKind,
    UnknownRelationship,
)
from model_adapter.metadata.models import ModelInfo, RelationshipInfo, RelationshipKind
from model_adapter.metadata.registry import (
    belongs_to,
    column,
    declare,
    has_and_belongs_to_many,
    has_many,
    has_one,
    index,
    lookup,
    model,
)


class Record:
    def __init__(self, **fields):
        for key, value in fields.items():
            setattr(self, key, value)


def _backend() -> MemoryBackend:
    return MemoryBackend(key_factory=itertools.count(1).__next__)


@pytest.fixture
def library(reg):
    class Author(Record):
        pass

    class Book(Record):
        pass

    model(table="authors", columns=["id", "name"], registry=reg)(Author)
    model(table="books", columns=["id", "title", "year"], registry=reg)(Book)
    column(Book, "author_id", secondary=True, registry=reg)
    index(Book, "by_title_year", ["title", "year"], registry=reg)
    has_many(Author, "books", Book, foreign_key="author_id", registry=reg)
    belongs_to(Book, "author", Author, foreign_key="author_id", registry=reg)
    return Author, Book


@pytest.fixture
async def engine(reg, library):
    engine = AdapterEngine(library, _backend(), registry=reg)
    await engine.ensure()
    return engine


@pytest.fixture
def school(reg):
    class Student(Record):
        pass

    class Course(Record):
        pass

    model(table="students", columns=["id", "name"], registry=reg)(Student)
    model(table="courses", columns=["id", "title"], registry=reg)(Course)
    has_and_belongs_to_many(Student, "courses", Course, registry=reg)
    has_and_belongs_to_many(Course, "students", Student, registry=reg)
    return Student, Course


@pytest.fixture
async def school_engine(reg, school):
    engine = AdapterEngine(school, _backend(), registry=reg)
    await engine.ensure()
    return engine


# ------------------------------------------------------------------
# Link naming
# ------------------------------------------------------------------


class TestLinkNaming:
    def test_lexicographic_and_symmetric(self):
        assert link_table_name("students", "courses") == "courses_students"
        assert link_table_name("courses", "students") == "courses_students"

    def test_custom_separator(self):
        assert link_table_name("b", "a", "__") == "a__b"

    def test_link_key(self):
        assert link_key("students") == "students_id"


# ------------------------------------------------------------------
# Construction
# ------------------------------------------------------------------


class TestConstruction:
    """Engine construction registers models and synthesizes link models."""

    def test_unregistered_model_rejected(self, reg):
        class Ghost:
            pass

        with pytest.raises(NotRegistered):
            AdapterEngine([Ghost], _backend(), registry=reg)

    def test_link_model_synthesized_once(self, reg, school):
        engine = AdapterEngine(school, _backend(), registry=reg)

        assert list(engine.link_models) == ["courses_students"]
        assert len(engine.models) == 3
        link_type = engine.models[-1]
        assert issubclass(link_type, LinkModel)
        assert link_type.__name__ == "CoursesStudentsLink"

    def test_link_model_info(self, reg, school):
        Student, Course = school
        engine = AdapterEngine(school, _backend(), registry=reg)

        info = engine.info(engine.link_model(Student, Course))

        assert info.table == "courses_students"
        assert info.primary_field == "id"
        assert [c.field_key for c in info.columns] == ["id", "students_id", "courses_id"]
        assert {i.name for i in info.indexes} == {"students_id", "courses_id"}
        assert engine.link_model(Course, Student) is engine.link_model(Student, Course)

    def test_link_separator(self, reg, school):
        engine = AdapterEngine(school, _backend(), registry=reg, link_separator="__")

        assert list(engine.link_models) == ["courses__students"]

    def test_link_model_missing_raises(self, reg, library):
        engine = AdapterEngine(library, _backend(), registry=reg)

        with pytest.raises(NotRegistered):
            engine.link_model(*library)

    def test_engine_for(self, reg, library):
        Author, _ = library
        engine = AdapterEngine(library, _backend(), registry=reg)

        assert engine_for(Author) is engine
        assert engine_for(Author(name="x")) is engine

        class Stranger:
            pass

        with pytest.raises(NotRegistered):
            engine_for(Stranger)

    def test_default_location_applied(self, reg, library):
        Author, _ = library
        engine = AdapterEngine(library, _backend(), registry=reg, default_location="app")

        assert engine.info(Author).storage_location == "app"
        assert lookup(Author, reg).storage_location == ""


# ------------------------------------------------------------------
# ensure()
# ------------------------------------------------------------------


class TestEnsure:
    async def test_every_model_ensured(self, reg, school):
        backend = AsyncMock()
        engine = AdapterEngine(school, backend, registry=reg)

        await engine.ensure()

        tables = {call.args[0].table for call in backend.ensure_schema.call_args_list}
        assert tables == {"students", "courses", "courses_students"}

    async def test_failure_wrapped_in_schema_error(self, reg, library):
        backend = AsyncMock()
        backend.ensure_schema.side_effect = RuntimeError("disk full")
        engine = AdapterEngine(library, backend, registry=reg)

        with pytest.raises(SchemaError, match="disk full"):
            await engine.ensure()

    async def test_schema_error_propagates_unchanged(self, reg, library):
        error = SchemaError("bad index")
        backend = AsyncMock()
        backend.ensure_schema.side_effect = error
        engine = AdapterEngine(library, backend, registry=reg)

        with pytest.raises(SchemaError) as excinfo:
            await engine.ensure()
        assert excinfo.value is error

    async def test_idempotent(self, engine):
        await engine.ensure()
        await engine.ensure()


# ------------------------------------------------------------------
# save() / delete()
# ------------------------------------------------------------------


class TestSave:
    async def test_insert_assigns_generated_key(self, engine, library):
        Author, _ = library
        author = Author(name="Ursula")

        result = await engine.save(author)

        assert result is author
        assert author.id == 1

    async def test_existing_key_updates(self, engine, library):
        Author, _ = library
        author = await engine.save(Author(name="Ursula"))
        author.name = "Ursula K. Le Guin"

        await engine.save(author)

        assert await engine.count(Author) == 1
        fetched = await engine.get_one(Author, author.id)
        assert fetched.name == "Ursula K. Le Guin"

    async def test_empty_string_key_treated_as_unset(self, engine, library):
        Author, _ = library
        author = await engine.save(Author(id="", name="Ursula"))

        assert author.id == 1

    async def test_computed_column_not_persisted(self, reg):
        class User(Record):
            @property
            def display(self):
                return self.name.upper()

        model(table="users", columns=["id", "name", "display"], registry=reg)(User)
        engine = AdapterEngine([User], _backend(), registry=reg)
        await engine.ensure()

        await engine.save(User(name="ada"))

        rows = await engine.backend.fetch_all(engine.info(User))
        assert rows == [{"id": 1, "name": "ada"}]
        fetched = await engine.get_one(User, 1)
        assert fetched.display == "ADA"

    async def test_storage_keys_used(self, reg):
        class User(Record):
            pass

        model(table="users", registry=reg)(User)
        column(User, "uid", primary=True, storage_key="_key", registry=reg)
        column(User, "email", storage_key="mail", registry=reg)
        engine = AdapterEngine([User], _backend(), registry=reg)
        await engine.ensure()

        user = await engine.save(User(email="ada@example.com"))

        rows = await engine.backend.fetch_all(engine.info(User))
        assert rows == [{"_key": 1, "mail": "ada@example.com"}]
        assert user.uid == 1
        found = await engine.find_one(User, {"email": "ada@example.com"})
        assert found.uid == 1
        assert found.email == "ada@example.com"

    async def test_hooks_observe_save(self, reg):
        events = []

        class Post(Record):
            def before_save(self):
                events.append(("before_save", getattr(self, "id", None)))
                self.slug = self.title.lower().replace(" ", "-")

            async def after_save(self):
                events.append(("after_save", self.id))

        model(table="posts", columns=["id", "title", "slug"], registry=reg)(Post)
        engine = AdapterEngine([Post], _backend(), registry=reg)
        await engine.ensure()

        post = await engine.save(Post(title="Hello World"))

        assert events == [("before_save", None), ("after_save", 1)]
        assert (await engine.get_one(Post, post.id)).slug == "hello-world"


class TestDelete:
    async def test_delete_removes_record(self, engine, library):
        Author, _ = library
        author = await engine.save(Author(name="Ursula"))

        await engine.delete(author)

        assert await engine.get_one(Author, author.id) is None

    @pytest.mark.parametrize("key", [None, ""])
    async def test_missing_key_never_reaches_backend(self, reg, library, key):
        Author, _ = library
        backend = AsyncMock()
        engine = AdapterEngine(library, backend, registry=reg)

        with pytest.raises(MissingKey):
            await engine.delete(Author(id=key, name="x"))
        backend.remove_by_key.assert_not_called()

    async def test_delete_hooks_order(self, reg):
        events = []

        class Note(Record):
            def before_delete(self):
                events.append("before_delete")

            def after_delete(self):
                events.append("after_delete")

        model(table="notes", columns=["id"], registry=reg)(Note)
        engine = AdapterEngine([Note], _backend(), registry=reg)
        await engine.ensure()

        await engine.delete(await engine.save(Note()))

        assert events == ["before_delete", "after_delete"]


# ------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------


class TestReads:
    async def test_get_one_missing_returns_none(self, engine, library):
        Author, _ = library

        assert await engine.get_one(Author, 999) is None
        assert await engine.get(Author, 999) == []

    async def test_find_and_options(self, engine, library):
        _, Book = library
        for title, year in [("B", 2001), ("A", 1999), ("C", 2010)]:
            await engine.save(Book(title=title, year=year, author_id=7))

        books = await engine.find(
            Book, {"author_id": 7}, QueryOptions(order_by="year", descending=True, limit=2)
        )

        assert [b.title for b in books] == ["C", "B"]
        assert (await engine.find_one(Book, {"title": "nope"})) is None

    async def test_all(self, engine, library):
        Author, _ = library
        await engine.save(Author(name="a"))
        await engine.save(Author(name="b"))

        assert [a.name for a in await engine.all(Author)] == ["a", "b"]

    async def test_count(self, engine, library):
        _, Book = library
        await engine.save(Book(title="A", author_id=1))
        await engine.save(Book(title="B", author_id=1))
        await engine.save(Book(title="C", author_id=2))

        assert await engine.count(Book) == 3
        assert await engine.count(Book, {"author_id": 1}) == 2

    async def test_composite_index(self, engine, library):
        _, Book = library
        await engine.save(Book(title="Dune", year=1965))
        await engine.save(Book(title="Dune", year=2021))

        books = await engine.get(Book, ["Dune", 2021], index="by_title_year")

        assert [b.year for b in books] == [2021]

    async def test_composite_index_value_count_mismatch(self, engine, library):
        _, Book = library

        with pytest.raises(ValueError, match="expects 2 values"):
            await engine.get(Book, "Dune", index="by_title_year")

    async def test_undeclared_index_is_storage_path(self, engine, library):
        _, Book = library
        await engine.save(Book(title="Dune"))

        assert [b.title for b in await engine.get(Book, "Dune", index="title")] == ["Dune"]

    async def test_field_key_index_uses_storage_key(self, reg):
        class Book(Record):
            pass

        model(table="books", columns=["id", "title"], registry=reg)(Book)
        column(Book, "author_id", storage_key="authorId", secondary=True, registry=reg)
        backend = _backend()
        engine = AdapterEngine([Book], backend, registry=reg)
        await engine.ensure()
        await engine.save(Book(title="Lathe", author_id=7))
        await engine.save(Book(title="Dune", author_id=8))

        books = await engine.get(Book, 7, index="author_id")

        assert [b.title for b in books] == ["Lathe"]

    async def test_dotted_index_path(self, reg):
        class Place(Record):
            pass

        model(table="places", columns=["id", "name", "address"], registry=reg)(Place)
        index(Place, "by_city", ["address.city"], registry=reg)
        engine = AdapterEngine([Place], _backend(), registry=reg)
        await engine.ensure()
        await engine.save(Place(name="Fram", address={"city": "Oslo", "zip": "0286"}))
        await engine.save(Place(name="Tate", address={"city": "London"}))

        places = await engine.get(Place, "Oslo", index="by_city")

        assert [p.name for p in places] == ["Fram"]

    async def test_after_retrieve_fires(self, reg):
        class Item(Record):
            def after_retrieve(self):
                self.loaded = True

        model(table="items", columns=["id", "name"], registry=reg)(Item)
        engine = AdapterEngine([Item], _backend(), registry=reg)
        await engine.ensure()
        item = await engine.save(Item(name="x"))

        fetched = await engine.get_one(Item, item.id)

        assert fetched.loaded is True
        assert not hasattr(item, "loaded")


# ------------------------------------------------------------------
# Joins
# ------------------------------------------------------------------


class TestJoin:
    async def test_has_many_in_backend_order(self, engine, library):
        Author, Book = library
        author = await engine.save(Author(name="Ursula"))
        other = await engine.save(Author(name="Frank"))
        b1 = await engine.save(Book(title="Lathe", author_id=author.id))
        await engine.save(Book(title="Dune", author_id=other.id))
        b2 = await engine.save(Book(title="Dispossessed", author_id=author.id))

        result = await engine.join(author, "books")

        assert result is author
        assert [b.id for b in author.books] == [b1.id, b2.id]

    async def test_has_many_storage_keyed_foreign_key(self, reg):
        class Author(Record):
            pass

        class Book(Record):
            pass

        model(table="authors", columns=["id", "name"], registry=reg)(Author)
        model(table="books", columns=["id", "title"], registry=reg)(Book)
        column(Book, "author_id", storage_key="authorId", secondary=True, registry=reg)
        has_many(Author, "books", Book, foreign_key="author_id", registry=reg)
        engine = AdapterEngine([Author, Book], _backend(), registry=reg)
        await engine.ensure()
        author = await engine.save(Author(name="Ursula"))
        await engine.save(Book(title="Lathe", author_id=author.id))

        await engine.join(author, "books")

        assert [b.title for b in author.books] == ["Lathe"]

    async def test_unsaved_owner_has_no_books(self, engine, library):
        Author, Book = library
        await engine.save(Book(title="Orphan", author_id=None))

        author = await engine.join(Author(name="unsaved"), "books")

        assert author.books == []

    @pytest.mark.parametrize("key", [None, ""])
    async def test_unsaved_owner_never_queries(self, reg, school, key):
        Student, Course = school

        class User(Record):
            pass

        class Profile(Record):
            pass

        model(table="users", columns=["id"], registry=reg)(User)
        model(table="profiles", columns=["id", "user_id"], registry=reg)(Profile)
        has_one(User, "profile", Profile, foreign_key="user_id", registry=reg)
        backend = AsyncMock()
        engine = AdapterEngine([User, Profile, Student, Course], backend, registry=reg)

        user = await engine.join(User(id=key), "profile")
        student = await engine.join(Student(id=key, name="new"), "courses")

        assert user.profile is None
        assert student.courses == []
        backend.fetch_one.assert_not_called()
        backend.fetch_filtered.assert_not_called()

    async def test_has_many_predicate_applied_to_each(self, engine, library):
        Author, Book = library
        author = await engine.save(Author(name="Ursula"))
        await engine.save(Book(title="a", author_id=author.id))
        await engine.save(Book(title="b", author_id=author.id))

        async def mark(book):
            book.seen = True

        await engine.join(author, "books", mark)

        assert all(book.seen for book in author.books)

    async def test_belongs_to(self, engine, library):
        Author, Book = library
        author = await engine.save(Author(name="Ursula"))
        book = await engine.save(Book(title="Lathe", author_id=author.id))
        seen = []

        await engine.join(book, "author", seen.append)

        assert book.author.name == "Ursula"
        assert seen == [book.author]

    async def test_belongs_to_unset_foreign_key(self, reg, library):
        _, Book = library
        backend = AsyncMock()
        engine = AdapterEngine(library, backend, registry=reg)

        await engine.join(Book(id=1, title="Orphan"), "author")

        backend.fetch_one.assert_not_called()

    async def test_has_one(self, reg):
        class User(Record):
            pass

        class Profile(Record):
            pass

        model(table="users", columns=["id", "name"], registry=reg)(User)
        model(table="profiles", columns=["id", "bio"], registry=reg)(Profile)
        column(Profile, "user_id", secondary=True, registry=reg)
        has_one(User, "profile", Profile, foreign_key="user_id", registry=reg)
        engine = AdapterEngine([User, Profile], _backend(), registry=reg)
        await engine.ensure()
        user = await engine.save(User(name="ada"))
        await engine.save(Profile(bio="mathematician", user_id=user.id))
        lonely = await engine.save(User(name="nobody"))

        await engine.join(user, "profile")
        await engine.join(lonely, "profile")

        assert user.profile.bio == "mathematician"
        assert lonely.profile is None

    async def test_unknown_relationship(self, engine, library):
        Author, _ = library

        with pytest.raises(UnknownRelationship, match="publisher"):
            await engine.join(Author(id=1), "publisher")

    async def test_unhandled_kind(self, reg, library):
        Author, Book = library
        odd = RelationshipInfo.model_construct(
            kind="polymorphic_many", key="odd", foreign_key="", target=lambda _s: Book
        )
        declare(Author, ModelInfo(relationships=[odd]), reg)
        engine = AdapterEngine(library, _backend(), registry=reg)
        await engine.ensure()

        with pytest.raises(UnhandledKind):
            await engine.join(Author(id=1), "odd")

    async def test_join_hooks_receive_relationship(self, reg):
        events = []

        class Team(Record):
            def before_join(self, relationship):
                events.append(("before", relationship.key))

            def after_join(self, relationship):
                events.append(("after", relationship.key, len(self.members)))

        class Member(Record):
            pass

        model(table="teams", columns=["id"], registry=reg)(Team)
        model(table="members", columns=["id"], registry=reg)(Member)
        column(Member, "team_id", secondary=True, registry=reg)
        has_many(Team, "members", Member, foreign_key="team_id", registry=reg)
        engine = AdapterEngine([Team, Member], _backend(), registry=reg)
        await engine.ensure()
        team = await engine.save(Team())
        await engine.save(Member(team_id=team.id))

        await engine.join(team, "members")

        assert events == [("before", "members"), ("after", "members", 1)]

    async def test_target_resolved_per_instance(self, reg):
        class Owner(Record):
            pass

        class Cat(Record):
            pass

        class Dog(Record):
            pass

        model(table="owners", columns=["id", "kind"], registry=reg)(Owner)
        for pet in (Cat, Dog):
            model(columns=["id", "name"], registry=reg)(pet)
            column(pet, "owner_id", secondary=True, registry=reg)
        has_many(
            Owner,
            "pets",
            lambda owner: Cat if getattr(owner, "kind", None) == "cat" else Dog,
            foreign_key="owner_id",
            registry=reg,
        )
        engine = AdapterEngine([Owner, Cat, Dog], _backend(), registry=reg)
        await engine.ensure()
        cat_person = await engine.save(Owner(kind="cat"))
        dog_person = await engine.save(Owner(kind="dog"))
        await engine.save(Cat(name="Tom", owner_id=cat_person.id))
        await engine.save(Dog(name="Rex", owner_id=dog_person.id))

        await engine.join(cat_person, "pets")
        await engine.join(dog_person, "pets")

        assert [type(p) for p in cat_person.pets] == [Cat]
        assert [type(p) for p in dog_person.pets] == [Dog]


class TestManyToMany:
    """Joins and link management through synthesized link models."""

    async def test_join_both_directions(self, school_engine, school):
        Student, Course = school
        engine = school_engine
        s1 = await engine.save(Student(name="s1"))
        s2 = await engine.save(Student(name="s2"))
        c1 = await engine.save(Course(title="c1"))
        c2 = await engine.save(Course(title="c2"))
        await engine.link(s1, "courses", c1)
        await engine.link(s1, "courses", c2)
        await engine.link(s2, "courses", c1)

        await engine.join(s1, "courses")
        await engine.join(c1, "students")

        assert [c.title for c in s1.courses] == ["c1", "c2"]
        assert [s.name for s in c1.students] == ["s1", "s2"]

    async def test_link_rows_written_to_link_table(self, school_engine, school):
        Student, Course = school
        engine = school_engine
        s1 = await engine.save(Student(name="s1"))
        c1 = await engine.save(Course(title="c1"))

        link = await engine.link(s1, "courses", c1)

        assert isinstance(link, engine.link_model(Student, Course))
        assert link.students_id == s1.id
        assert link.courses_id == c1.id

    async def test_link_idempotent(self, school_engine, school):
        Student, Course = school
        engine = school_engine
        s1 = await engine.save(Student(name="s1"))
        c1 = await engine.save(Course(title="c1"))

        first = await engine.link(s1, "courses", c1)
        second = await engine.link(c1, "students", s1)

        assert second.id == first.id
        assert await engine.count(engine.link_model(Student, Course)) == 1

    async def test_unlink(self, school_engine, school):
        Student, Course = school
        engine = school_engine
        s1 = await engine.save(Student(name="s1"))
        c1 = await engine.save(Course(title="c1"))
        await engine.link(s1, "courses", c1)

        assert await engine.unlink(s1, "courses", c1) == 1
        assert await engine.unlink(s1, "courses", c1) == 0

        await engine.join(s1, "courses")
        assert s1.courses == []

    async def test_link_requires_keys(self, school_engine, school):
        Student, Course = school
        s1 = await school_engine.save(Student(name="s1"))

        with pytest.raises(MissingKey):
            await school_engine.link(s1, "courses", Course(title="unsaved"))

    async def test_link_rejects_other_kinds(self, engine, library):
        Author, Book = library
        author = await engine.save(Author(name="a"))
        book = await engine.save(Book(title="b"))

        with pytest.raises(UnhandledKind):
            await engine.link(author, "books", book)

    async def test_dangling_link_kept_as_none(self, school_engine, school):
        """One result per link row, in link-row order."""
        Student, Course = school
        engine = school_engine
        s1 = await engine.save(Student(name="s1"))
        c1 = await engine.save(Course(title="c1"))
        c2 = await engine.save(Course(title="c2"))
        await engine.link(s1, "courses", c1)
        await engine.link(s1, "courses", c2)
        await engine.delete(c1)
        titles = []

        await engine.join(s1, "courses", lambda course: titles.append(course.title))

        assert s1.courses[0] is None
        assert s1.courses[1].title == "c2"
        assert titles == ["c2"]

    async def test_predicate_on_linked(self, school_engine, school):
        Student, Course = school
        engine = school_engine
        s1 = await engine.save(Student(name="s1"))
        await engine.link(s1, "courses", await engine.save(Course(title="c1")))
        titles = []

        await engine.join(s1, "courses", lambda course: titles.append(course.title))

        assert titles == ["c1"]


class TestLifecycle:
    async def test_context_manager_closes_backend(self, reg, library):
        backend = AsyncMock()

        async with AdapterEngine(library, backend, registry=reg) as engine:
            assert engine.backend is backend

        backend.close.assert_awaited_once()

    async def test_close_releases_model_bindings(self, reg, library):
        Author, _ = library
        first = AdapterEngine(library, AsyncMock(), registry=reg)
        second = AdapterEngine(library, AsyncMock(), registry=reg)

        await first.close()
        assert engine_for(Author) is second

        await second.close()
        with pytest.raises(NotRegistered):
            engine_for(Author)

    def test_discarded_engine_not_retained(self, reg, library):
        Author, _ = library
        AdapterEngine(library, _backend(), registry=reg)
        gc.collect()

        with pytest.raises(NotRegistered):
            engine_for(Author)
