import math
import os
import stat

import pytest

from bioharness.data_models import (
    Candidate,
    GalleryType,
    ManifestEntry,
    Modality,
    ReturnCode,
    ReturnStatus,
)
from bioharness.exceptions import (
    GalleryFinalizedError,
    GalleryIntegrityError,
    GalleryStateError,
    ManifestError,
)
from bioharness.gallery import (
    EnrollmentShardWriter,
    GalleryLifecycleManager,
    GalleryState,
    is_ranked,
    merge_enrollment_shards,
    rank_candidates,
    read_manifest,
    validate_manifest,
    write_manifest,
)

from plugins import (
    InventedCandidateStub,
    ScalarGalleryStub,
    UntypedScoreStub,
    encode_value,
)


def build_gallery(enroll_dir, templates, num_shards=2):
    """Enroll ``(id, bytes)`` pairs through shard writers and merge them."""
    enroll_dir.mkdir(parents=True, exist_ok=True)
    shards = [
        (enroll_dir / f"enroll.edb.{i}", enroll_dir / f"enroll.manifest.{i}")
        for i in range(num_shards)
    ]
    chunk = math.ceil(len(templates) / num_shards)
    for index, (edb, manifest) in enumerate(shards):
        with EnrollmentShardWriter(edb, manifest) as writer:
            for template_id, template in templates[index * chunk : (index + 1) * chunk]:
                writer.append(template_id, template)
    return merge_enrollment_shards(
        shards, enroll_dir / "enroll.edb", enroll_dir / "enroll.manifest"
    )


def scalar_templates(count):
    return [(f"E{i}", encode_value(float(i))) for i in range(count)]


# -- manifest ---------------------------------------------------------------


def test_manifest_round_trip(tmp_path):
    entries = [ManifestEntry("a", 0, 10), ManifestEntry("b", 10, 0), ManifestEntry("c", 10, 5)]
    write_manifest(tmp_path / "m", entries)

    assert read_manifest(tmp_path / "m") == entries


def test_manifest_supports_offsets_beyond_four_gib(tmp_path):
    (tmp_path / "m").write_text("big 0 5000000000\nnext 5000000000 7\n")

    entries = read_manifest(tmp_path / "m")

    assert entries[1].offset == 5_000_000_000
    validate_manifest(entries, 5_000_000_007)


@pytest.mark.parametrize(
    "line",
    ["a 0", "a -1 4", "a 0 x", f"a {2**64} 1", f"a {2**63} {2**63 + 1}"],
)
def test_manifest_rejects_malformed_lines(tmp_path, line):
    (tmp_path / "m").write_text(line + "\n")

    with pytest.raises(ManifestError):
        read_manifest(tmp_path / "m")


def test_validate_manifest_rejects_gaps_and_duplicates():
    with pytest.raises(ManifestError, match="starts at"):
        validate_manifest([ManifestEntry("a", 0, 4), ManifestEntry("b", 5, 4)], 9)
    with pytest.raises(ManifestError, match="Duplicate"):
        validate_manifest([ManifestEntry("a", 0, 4), ManifestEntry("a", 4, 4)], 8)
    with pytest.raises(ManifestError, match="covers"):
        validate_manifest([ManifestEntry("a", 0, 4)], 5)


# -- enrollment shards ------------------------------------------------------


def test_merge_rebases_offsets_in_shard_order(tmp_path):
    templates = [("A", b"aaa"), ("B", b""), ("C", b"cccc"), ("D", b"d")]

    merged = build_gallery(tmp_path, templates, num_shards=2)

    assert [(e.template_id, e.offset, e.length) for e in merged] == [
        ("A", 0, 3),
        ("B", 3, 0),
        ("C", 3, 4),
        ("D", 7, 1),
    ]
    assert (tmp_path / "enroll.edb").read_bytes() == b"aaaccccd"
    assert not (tmp_path / "enroll.edb.0").exists()
    assert not (tmp_path / "enroll.manifest.1").exists()


def test_zero_length_templates_are_enrolled(tmp_path):
    merged = build_gallery(tmp_path, [("empty", b""), ("full", b"xy")], num_shards=1)

    assert merged[0] == ManifestEntry("empty", 0, 0)


def test_shard_writer_discard_removes_files(tmp_path):
    writer = EnrollmentShardWriter(tmp_path / "e", tmp_path / "m")
    writer.append("a", b"1234")

    writer.discard()

    assert not (tmp_path / "e").exists()
    assert not (tmp_path / "m").exists()


# -- candidate ordering -----------------------------------------------------


def assigned(template_id, score):
    return Candidate(True, template_id, score)


def test_rank_face_descending_with_padding():
    ranked = rank_candidates(
        [assigned("a", 0.2), assigned("b", 0.9), assigned("c", 0.5)], 5, Modality.FACE
    )

    assert [c.template_id for c in ranked[:3]] == ["b", "c", "a"]
    assert len(ranked) == 5
    assert [c.is_assigned for c in ranked] == [True, True, True, False, False]
    assert is_ranked(ranked, Modality.FACE)


def test_rank_iris_ascending():
    ranked = rank_candidates(
        [assigned("a", 0.2), assigned("b", 0.9), assigned("c", 0.5)], 2, Modality.IRIS
    )

    assert [c.template_id for c in ranked] == ["a", "c"]
    assert is_ranked(ranked, Modality.IRIS)
    assert not is_ranked(ranked, Modality.FACE)


def test_rank_breaks_ties_by_manifest_order():
    order = {"late": 5, "early": 1, "middle": 3}
    candidates = [assigned("late", 1.0), assigned("middle", 1.0), assigned("early", 1.0)]

    ranked = rank_candidates(candidates, 3, Modality.MULTIMODAL, order)

    assert [c.template_id for c in ranked] == ["early", "middle", "late"]


def test_rank_drops_invalid_candidates():
    order = {"a": 0, "b": 1}
    candidates = [
        Candidate.unassigned(),
        assigned("ghost", 0.99),
        assigned("a", float("nan")),
        assigned("b", 0.4),
        assigned("b", 0.3),
    ]

    ranked = rank_candidates(candidates, 3, Modality.FACE, order)

    assert ranked[0] == assigned("b", 0.4)
    assert [c.is_assigned for c in ranked] == [True, False, False]


def test_is_ranked_rejects_assigned_after_unassigned():
    assert not is_ranked([Candidate.unassigned(), assigned("a", 1.0)], Modality.FACE)


# -- lifecycle --------------------------------------------------------------


@pytest.fixture
def finalized(tmp_path):
    enroll_dir = tmp_path / "enroll"
    build_gallery(enroll_dir, scalar_templates(10))
    impl = ScalarGalleryStub()
    manager = GalleryLifecycleManager(impl, tmp_path, enroll_dir)
    assert manager.finalize(GalleryType.CONSOLIDATED).ok
    return impl, manager


def test_finalize_moves_to_finalized_and_makes_files_read_only(finalized):
    impl, manager = finalized

    assert manager.state == GalleryState.FINALIZED
    assert impl.finalize_calls == 1
    for path in (manager.edb_path, manager.manifest_path, manager.marker_path):
        assert not os.stat(path).st_mode & stat.S_IWUSR
    marker = manager.read_marker()
    assert marker["num_templates"] == 10
    assert marker["gallery_type"] == "CONSOLIDATED"


def test_second_finalize_is_rejected_without_mutation(finalized):
    impl, manager = finalized
    blob = manager.edb_path.read_bytes()
    manifest = manager.manifest_path.read_bytes()

    with pytest.raises(GalleryFinalizedError):
        manager.finalize(GalleryType.CONSOLIDATED)

    assert impl.finalize_calls == 1
    assert manager.edb_path.read_bytes() == blob
    assert manager.manifest_path.read_bytes() == manifest


def test_finalized_state_survives_new_manager(finalized, tmp_path):
    impl, manager = finalized

    again = GalleryLifecycleManager(impl, tmp_path, manager.enrollment_dir)

    assert again.state == GalleryState.FINALIZED
    with pytest.raises(GalleryFinalizedError):
        again.finalize()
    with pytest.raises(GalleryFinalizedError):
        again.ensure_writable()


def test_failed_finalize_leaves_gallery_uninitialized(tmp_path):
    enroll_dir = tmp_path / "enroll"
    build_gallery(enroll_dir, scalar_templates(3))

    class Refusing(ScalarGalleryStub):
        def finalize_enrollment(self, *args):
            return ReturnStatus(ReturnCode.ENROLL_DIR_ERROR)

    manager = GalleryLifecycleManager(Refusing(), tmp_path, enroll_dir)

    assert not manager.finalize().ok
    assert manager.state == GalleryState.UNINITIALIZED
    assert not manager.marker_path.exists()


def test_finalize_requires_consistent_enrollment(tmp_path):
    enroll_dir = tmp_path / "enroll"
    build_gallery(enroll_dir, scalar_templates(3))
    with open(enroll_dir / "enroll.edb", "ab") as fh:
        fh.write(b"junk")

    manager = GalleryLifecycleManager(ScalarGalleryStub(), tmp_path, enroll_dir)

    with pytest.raises(ManifestError):
        manager.finalize()


def test_identification_requires_finalized_gallery(tmp_path):
    enroll_dir = tmp_path / "enroll"
    build_gallery(enroll_dir, scalar_templates(3))
    manager = GalleryLifecycleManager(ScalarGalleryStub(), tmp_path, enroll_dir)

    with pytest.raises(GalleryStateError):
        manager.initialize_identification()
    with pytest.raises(GalleryStateError):
        manager.search(encode_value(1.0), 1)


def test_identification_detects_tampering(finalized):
    impl, manager = finalized
    os.chmod(manager.edb_path, 0o644)
    with open(manager.edb_path, "r+b") as fh:
        fh.write(b"\x00\x00\x00\x00")

    with pytest.raises(GalleryIntegrityError):
        manager.initialize_identification()


def test_search_returns_exactly_top_k_in_face_order(finalized):
    impl, manager = finalized
    assert manager.initialize_identification().ok
    assert manager.state == GalleryState.SEARCH_READY

    for query in (0.0, 4.4, 9.0):
        result = manager.search(encode_value(query), 4)
        assert len(result.candidates) == 4
        assert is_ranked(result.candidates, Modality.FACE)


def test_search_pads_small_gallery(tmp_path):
    enroll_dir = tmp_path / "enroll"
    build_gallery(enroll_dir, scalar_templates(3))
    manager = GalleryLifecycleManager(ScalarGalleryStub(), tmp_path, enroll_dir)
    manager.finalize()
    manager.initialize_identification()

    result = manager.search(encode_value(1.0), 5)

    assert [c.is_assigned for c in result.candidates] == [True, True, True, False, False]
    assert result.candidates[0].template_id == "E1"


def test_iris_search_orders_by_ascending_distance(tmp_path):
    enroll_dir = tmp_path / "enroll"
    build_gallery(enroll_dir, scalar_templates(20))
    manager = GalleryLifecycleManager(
        ScalarGalleryStub(distance=True), tmp_path, enroll_dir, modality=Modality.IRIS
    )
    manager.finalize()
    manager.initialize_identification()

    result = manager.search(encode_value(12.2), 6)

    assert result.candidates[0].template_id == "E12"
    scores = [c.score for c in result.candidates]
    assert scores == sorted(scores)


def test_thousand_template_gallery_finds_e7_first(tmp_path):
    enroll_dir = tmp_path / "enroll"
    build_gallery(enroll_dir, scalar_templates(1000), num_shards=3)
    manager = GalleryLifecycleManager(ScalarGalleryStub(), tmp_path, enroll_dir)
    assert manager.finalize().ok
    assert manager.initialize_identification().ok

    result = manager.search(encode_value(7.1), 5)

    assert len(result.candidates) == 5
    assert result.candidates[0].template_id == "E7"
    assert result.candidates[0].is_assigned
    assert all(c.is_assigned for c in result.candidates)
    assert is_ranked(result.candidates, Modality.FACE)


def test_repeated_searches_are_identical(finalized):
    impl, manager = finalized
    manager.initialize_identification()

    first = manager.search(encode_value(3.5), 3)
    second = manager.search(encode_value(3.5), 3)

    assert first == second
    assert [c.template_id for c in first.candidates[:2]] == ["E3", "E4"]


def test_rank_with_empty_manifest_assigns_nothing():
    ranked = rank_candidates([assigned("x", 1.0)], 2, Modality.FACE, {})

    assert [c.is_assigned for c in ranked] == [False, False]


def test_search_of_empty_gallery_returns_only_unassigned(tmp_path):
    enroll_dir = tmp_path / "enroll"
    build_gallery(enroll_dir, [], num_shards=1)
    manager = GalleryLifecycleManager(InventedCandidateStub(), tmp_path, enroll_dir)
    assert manager.finalize().ok
    assert manager.initialize_identification().ok

    result = manager.search(encode_value(1.0), 3)

    assert result.status.ok
    assert len(result.candidates) == 3
    assert not any(c.is_assigned for c in result.candidates)


def test_search_result_with_untyped_score_is_an_item_error(tmp_path):
    enroll_dir = tmp_path / "enroll"
    build_gallery(enroll_dir, scalar_templates(3))
    manager = GalleryLifecycleManager(UntypedScoreStub(), tmp_path, enroll_dir)
    manager.finalize()
    manager.initialize_identification()

    result = manager.search(encode_value(1.0), 2)

    assert result.status.code == ReturnCode.UNKNOWN_ERROR
    assert [c.is_assigned for c in result.candidates] == [False, False]
