"""Unit tests for duplicate grouping."""

from audio_sorter.duplicates import find_duplicates
from audio_sorter.models import TrackRecord, TrackTags


def make_record(path, fingerprint, artist="Artist", title="Song"):
    return TrackRecord(
        path=path,
        modified_time=1.0,
        fingerprint=fingerprint,
        tags=TrackTags(title=title, artist=artist),
    )


class TestFindDuplicates:
    def test_shared_fingerprint_forms_one_group(self):
        records = {
            "a.mp3": make_record("a.mp3", "X"),
            "b.mp3": make_record("b.mp3", "X"),
            "c.mp3": make_record("c.mp3", "Y"),
            "d.mp3": make_record("d.mp3", None),
        }
        groups = find_duplicates(records)
        assert len(groups) == 1
        assert groups[0].fingerprint == "X"
        assert groups[0].paths == ["a.mp3", "b.mp3"]
        assert groups[0].group_id == 1

    def test_missing_fingerprint_never_grouped(self):
        records = [make_record("a.mp3", None), make_record("b.mp3", None)]
        assert find_duplicates(records) == []

    def test_empty_store(self):
        assert find_duplicates({}) == []

    def test_groups_ordered_and_numbered(self):
        records = [
            make_record("/m/z1.mp3", "Z"),
            make_record("/m/z2.mp3", "Z"),
            make_record("/m/b2.mp3", "B"),
            make_record("/m/a1.mp3", "B"),
            make_record("/m/a2.mp3", "B"),
        ]
        groups = find_duplicates(records)
        assert [g.group_id for g in groups] == [1, 2]
        assert groups[0].paths == ["/m/a1.mp3", "/m/a2.mp3", "/m/b2.mp3"]
        assert groups[1].fingerprint == "Z"

    def test_members_carry_tags(self):
        groups = find_duplicates([
            make_record("a.mp3", "X", artist="One", title="Song"),
            make_record("b.mp3", "X", artist="one ", title="song"),
        ])
        assert [m.tags.artist for m in groups[0].members] == ["One", "one "]
        assert groups[0].tags_consistent

    def test_tag_mismatch_is_surfaced(self):
        groups = find_duplicates([
            make_record("a.mp3", "X", artist="One"),
            make_record("b.mp3", "X", artist="Two"),
        ])
        assert len(groups) == 1
        assert not groups[0].tags_consistent
