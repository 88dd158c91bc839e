"""Tests for folding joined rows into nested objects."""

import json

from DataMapper import ResultIterator, ResultSet
from DataMapper.iterator import make_record_class

PEOPLE_WITH_PETS = [
    {"id": 1, "name": "Santiago", "pets.id": 1, "pets.name": "Rufus"},
    {"id": 1, "name": "Santiago", "pets.id": 2, "pets.name": "Buddy"},
    {"id": 2, "name": "Peter", "pets.id": 4, "pets.name": "Hugo"},
    {"id": 3, "name": "Lonely", "pets.id": None, "pets.name": None},
]


def people_iterator(rows=PEOPLE_WITH_PETS, fetch_first_pet=False):
    pets = ResultIterator(["pets.id"], fetch_first_row=fetch_first_pet)
    pets.attribute("id", "pets.id").attribute("name", "pets.name")

    people = ResultIterator(["id"])
    people.attribute("id").attribute("name").attribute("pets", pets)
    return people.set_result_set(ResultSet(rows))


class TestFolding:
    """Grouping repeated parent rows."""

    def test_nested_objects(self):
        assert people_iterator().to_serializable() == [
            {"id": 1, "name": "Santiago", "pets": [{"id": 1, "name": "Rufus"}, {"id": 2, "name": "Buddy"}]},
            {"id": 2, "name": "Peter", "pets": [{"id": 4, "name": "Hugo"}]},
            {"id": 3, "name": "Lonely", "pets": []},
        ]

    def test_lazy_nested_iteration(self):
        names = {person.name: [pet.name for pet in person.pets] for person in people_iterator()}
        assert names == {"Santiago": ["Rufus", "Buddy"], "Peter": ["Hugo"], "Lonely": []}

    def test_iterating_twice(self):
        people = people_iterator()
        assert [p.id for p in people] == [1, 2, 3]
        assert [p.id for p in people] == [1, 2, 3]

    def test_fetch_all_resolves_nested_iterators(self):
        santiago = people_iterator().fetch_all()[0]
        assert isinstance(santiago.pets, list)
        assert [pet.id for pet in santiago.pets] == [1, 2]

    def test_fetch_first_row(self):
        people = people_iterator(fetch_first_pet=True).fetch_all()
        assert people[0].pets.name == "Rufus"
        assert people[2].pets is None

    def test_children_are_scoped_to_their_parent(self):
        rows = [
            {"id": 1, "name": "A", "pets.id": 7, "pets.name": "Shared"},
            {"id": 2, "name": "B", "pets.id": 7, "pets.name": "Shared"},
        ]
        people = people_iterator(rows).fetch_all()
        assert [len(person.pets) for person in people] == [1, 1]

    def test_non_contiguous_groups_are_split(self):
        rows = [
            {"id": 1, "name": "A", "pets.id": 1, "pets.name": "x"},
            {"id": 2, "name": "B", "pets.id": 2, "pets.name": "y"},
            {"id": 1, "name": "A", "pets.id": 3, "pets.name": "z"},
        ]
        assert [person.id for person in people_iterator(rows)] == [1, 2, 1]


class TestHelpers:
    """first(), filters, factories and serialization."""

    def test_first(self):
        assert people_iterator().first().name == "Santiago"
        assert people_iterator([]).first() is None

    def test_null_key_rows_yield_nothing(self):
        rows = [{"id": None, "name": None, "pets.id": None, "pets.name": None}]
        assert people_iterator(rows).fetch_all() == []

    def test_row_count_counts_raw_rows(self):
        assert people_iterator().row_count() == 4
        assert ResultIterator(["id"]).row_count() is None

    def test_filters_run_in_order(self):
        people = people_iterator()
        people.add_filter(lambda person: setattr(person, "name", person.name.upper()))
        people.add_filter(lambda person: setattr(person, "name", person.name + "!"))
        assert people.first().name == "SANTIAGO!"

    def test_custom_factory(self):
        people = ResultIterator(["id"], dict).attribute("id").attribute("name")
        people.set_result_set(ResultSet([{"id": 1, "name": "Ana"}]))
        assert people.fetch_all() == [{"id": 1, "name": "Ana"}]

    def test_record_class(self):
        record = make_record_class(["id", "name"])(id=3)
        assert record.id == 3
        assert record.name is None

    def test_record_accepts_keyword_names(self):
        record = make_record_class(["id", "from"])(**{"from": "ana@example.com"})
        assert getattr(record, "from") == "ana@example.com"
        assert record.id is None

    def test_fetch_all_resolves_nested_iterators_in_mappings(self):
        pets = ResultIterator(["pets.id"], dict).attribute("name", "pets.name")
        people = ResultIterator(["id"], dict).attribute("id").attribute("pets", pets)
        people.set_result_set(ResultSet(PEOPLE_WITH_PETS[:2]))

        assert people.fetch_all() == [{"id": 1, "pets": [{"name": "Rufus"}, {"name": "Buddy"}]}]

    def test_undeclared_fields_are_removed(self):
        class Person:
            def __init__(self, **values):
                self.id = None
                self.secret = None
                self.__dict__.update(values)

        people = ResultIterator(["id"], Person).attribute("name")
        people.set_result_set(ResultSet([{"id": 1, "name": "Ana"}]))

        assert vars(people.first()) == {"name": "Ana"}
        assert people.to_serializable() == [{"name": "Ana"}]

    def test_to_json(self):
        data = json.loads(people_iterator([PEOPLE_WITH_PETS[2]]).to_json())
        assert data == [{"id": 2, "name": "Peter", "pets": [{"id": 4, "name": "Hugo"}]}]


class TestOneToMany:
    """The canonical parent/child folding."""

    def test_two_parents(self):
        people = people_iterator(PEOPLE_WITH_PETS[:3]).fetch_all()

        assert len(people) == 2
        assert [person.name for person in people] == ["Santiago", "Peter"]
        assert [[pet.name for pet in person.pets] for person in people] == [["Rufus", "Buddy"], ["Hugo"]]
