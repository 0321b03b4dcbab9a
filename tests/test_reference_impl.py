import numpy as np
import pytest

from bioharness.data_models import (
    GalleryType,
    Image,
    ImageDescription,
    ManifestEntry,
    Media,
    MediaLabel,
    MorphLabel,
    ReturnCode,
    Role,
    TemplateRole,
)
from bioharness.gallery import write_manifest
from bioharness.reference_impl import (
    FACE_TEMPLATE_BYTES,
    IRIS_TEMPLATE_BYTES,
    MULTIMODAL_TEMPLATE_BYTES,
    ReferenceImplementation,
    hamming_distance,
)


def random_image(seed, shape=(32, 32, 3), description=ImageDescription.UNKNOWN):
    rng = np.random.default_rng(seed)
    return Image.from_array(
        rng.integers(0, 255, size=shape, dtype=np.uint8), description=description
    )


def still(*images):
    return Media(MediaLabel.IMAGE, images)


@pytest.fixture
def impl(tmp_path):
    impl = ReferenceImplementation()
    assert impl.initialize(str(tmp_path), Role.QUALITY).ok
    return impl


def test_template_sizes(impl):
    face = impl.create_face_template(still(random_image(0)), TemplateRole.ENROLLMENT_1N)
    iris = impl.create_iris_template(
        still(random_image(1, (24, 48), ImageDescription.IRIS)), TemplateRole.ENROLLMENT_1N
    )
    both = impl.create_face_and_iris_template(
        still(random_image(0), random_image(1, (24, 48), ImageDescription.IRIS)),
        TemplateRole.ENROLLMENT_1N,
    )

    assert len(face.template) == FACE_TEMPLATE_BYTES
    assert len(iris.template) == IRIS_TEMPLATE_BYTES
    assert len(both.template) == MULTIMODAL_TEMPLATE_BYTES


def test_multimodal_needs_both_modalities(impl):
    result = impl.create_face_and_iris_template(
        still(random_image(0), random_image(1)), TemplateRole.ENROLLMENT_1N
    )

    assert result.status.code == ReturnCode.NUM_DATA_ERROR
    assert result.template == b""


def test_video_frames_are_averaged(impl):
    frames = Media(MediaLabel.VIDEO, (random_image(0), random_image(0)), fps=25)

    video = impl.create_face_template(frames, TemplateRole.SEARCH_1N)
    single = impl.create_face_template(still(random_image(0)), TemplateRole.SEARCH_1N)

    np.testing.assert_allclose(
        np.frombuffer(video.template, dtype=np.float32),
        np.frombuffer(single.template, dtype=np.float32),
        atol=1e-6,
    )


def test_small_images_are_refused(impl):
    tiny = random_image(0, (4, 4, 3))

    assert impl.vector_quality(tiny).status.code == ReturnCode.REFUSE_INPUT
    assert impl.detect_morph(tiny, MorphLabel.UNKNOWN).status.code == ReturnCode.REFUSE_INPUT


def test_quality_and_morph_scores(impl):
    image = random_image(3)

    quality = impl.vector_quality(image)
    morph = impl.detect_morph(image, MorphLabel.SCANNED)

    assert quality.status.ok
    assert quality.bounding_box.width == 32
    assert 0.0 <= morph.score <= 1.0
    assert morph.is_morph == (morph.score > impl.morph_threshold)


def test_compare_identical_images(impl):
    image = random_image(5)

    result = impl.compare_images(image, image)

    assert result.similarity == pytest.approx(1.0, abs=1e-6)


def test_demorph_is_not_provided(impl):
    assert impl.demorph(random_image(0)).status.not_implemented


def test_hamming_distance():
    assert hamming_distance(b"\x00\xff", b"\x00\xff") == 0.0
    assert hamming_distance(b"\x00\x00", b"\xff\xff") == 1.0
    assert hamming_distance(b"\x0f", b"\x00") == 0.5


def write_gallery(enroll_dir, templates):
    entries, offset, blob = [], 0, b""
    for template_id, template in templates:
        entries.append(ManifestEntry(template_id, offset, len(template)))
        offset += len(template)
        blob += template
    (enroll_dir / "enroll.edb").write_bytes(blob)
    write_manifest(enroll_dir / "enroll.manifest", entries)


def test_gallery_round_trip_and_iris_search(impl, tmp_path):
    templates = [
        (
            f"I{i}",
            impl.create_iris_template(
                still(random_image(i, (24, 48))), TemplateRole.ENROLLMENT_1N
            ).template,
        )
        for i in range(4)
    ]
    write_gallery(tmp_path, templates)

    status = impl.finalize_enrollment(
        str(tmp_path),
        str(tmp_path),
        str(tmp_path / "enroll.edb"),
        str(tmp_path / "enroll.manifest"),
        GalleryType.CONSOLIDATED,
    )
    assert status.ok

    searcher = ReferenceImplementation()
    assert searcher.initialize_identification(str(tmp_path), str(tmp_path)).ok
    result = searcher.search(templates[2][1], 3)

    assert result.status.ok
    assert [c.template_id for c in result.candidates][0] == "I2"
    assert result.candidates[0].score == 0.0
    scores = [c.score for c in result.candidates]
    assert scores == sorted(scores)


def test_identification_without_gallery_file(impl, tmp_path):
    status = impl.initialize_identification(str(tmp_path), str(tmp_path))

    assert status.code == ReturnCode.ENROLL_DIR_ERROR


def test_search_rejects_unknown_template_size(impl):
    assert impl.search(b"abc", 1).status.code == ReturnCode.VERIF_TEMPLATE_ERROR
