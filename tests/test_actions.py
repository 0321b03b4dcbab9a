import pytest

from bioharness.actions import (
    ACTIONS,
    ActionContext,
    CompareAction,
    SearchAction,
    TemplateAction,
    VectorQualityAction,
    fmt_bool,
    fmt_float,
    get_action,
)
from bioharness.data_models import (
    ImageDescription,
    Media,
    Modality,
    ReturnCode,
    ReturnStatus,
    TemplateResult,
    TemplateRole,
)
from bioharness.exceptions import ConfigurationError, ImageLoadError, WorkItemError

from plugins import QualityStub, ScalarGalleryStub


def test_registry_covers_every_action_family():
    expected = {
        "vectorQ",
        "compare",
        "demorph",
        "demorphDifferentially",
        "detectNonScannedMorph",
        "detectScannedMorph",
        "detectUnknownMorph",
        "detectNonScannedMorphWithProbeImg",
        "detectScannedMorphWithProbeImg",
        "detectUnknownMorphWithProbeImg",
        "enrollFace",
        "enrollIris",
        "enrollMultimodal",
        "searchFace",
        "searchIris",
        "searchMultimodal",
    }
    assert set(ACTIONS) == expected


def test_get_action_unknown():
    with pytest.raises(ConfigurationError):
        get_action("detectEverything")


def test_render_not_available_values():
    assert fmt_float(None) == "NA"
    assert fmt_float(float("nan")) == "NA"
    assert fmt_float(0.5) == "0.500000"
    assert fmt_bool(None) == "NA"
    assert fmt_bool(True) == "1"


def test_vector_quality_header():
    columns = VectorQualityAction().columns()

    assert columns[:7] == [
        "id",
        "image",
        "returnCode",
        "bb_xleft",
        "bb_ytop",
        "bb_width",
        "bb_height",
    ]
    assert columns[7] == "UnifiedQualityScore"
    assert columns[-1] == "NoHeadCoverings"
    assert len(columns) == 7 + 28


def test_vector_quality_requires_description():
    with pytest.raises(WorkItemError):
        VectorQualityAction().parse("Q1 /img/q1.png")


def test_vector_quality_record_uses_na_for_missing_measures(make_image):
    path = make_image("face.png", shape=(20, 30, 3))
    action = VectorQualityAction()
    item = action.parse(f"Q1 {path} mugshot")

    outcome = action.process(item, ActionContext(QualityStub()))

    fields = outcome.fields
    assert fields[:7] == ["Q1", str(path), "0", "1", "2", "30", "20"]
    assert fields[7] == "87.500000"
    assert fields[7 + 8] == "0.250000"
    assert fields.count("NA") == 26
    assert len(fields) == len(action.columns())


def test_missing_image_raises(tmp_path):
    action = VectorQualityAction()
    item = action.parse(f"Q1 {tmp_path / 'nope.png'} mugshot")

    with pytest.raises(ImageLoadError):
        action.process(item, ActionContext(QualityStub()))


def test_unsupported_operation_reports_not_implemented(make_image):
    action = CompareAction()
    item = action.parse(f"C1 {make_image('a.png')} {make_image('b.png', seed=1)}")

    outcome = action.process(item, ActionContext(QualityStub()))

    assert outcome.status.not_implemented


def test_probe_actions_need_two_images():
    action = get_action("detectScannedMorphWithProbeImg")

    item = action.parse("M1 /a.png /b.png")

    assert item.resources == ("/a.png", "/b.png")
    assert action.columns() == ["id", "image", "probe", "returnCode", "isMorph", "score"]
    with pytest.raises(WorkItemError):
        action.parse("M1 /a.png")


def test_template_action_parses_video_frames():
    item = get_action("enrollFace").parse("S1 f1.png f2.png f3.png fps=30")

    assert item.resources == ("f1.png", "f2.png", "f3.png")
    assert item.fps == 30


@pytest.mark.parametrize("line", ["S1", "S1 fps=30", "S1 a.png fps=x", "S1 a.png fps=0"])
def test_template_action_rejects_bad_lines(line):
    with pytest.raises(WorkItemError):
        get_action("searchFace").parse(line)


def test_multimodal_resources_carry_modality_prefix(make_image):
    face = make_image("face.png")
    iris = make_image("iris.png", shape=(24, 48))
    action = get_action("enrollMultimodal")

    media = action.load_media(action.parse(f"S1 face:{face} iris:{iris}"))

    assert [i.description for i in media.data] == [
        ImageDescription.UNKNOWN,
        ImageDescription.IRIS,
    ]


def test_search_header_has_top_k_candidate_triples():
    columns = SearchAction("searchFace", Modality.FACE).columns(top_k=2)

    assert columns == [
        "id",
        "images",
        "returnCode",
        "cand1_isAssigned",
        "cand1_id",
        "cand1_score",
        "cand2_isAssigned",
        "cand2_id",
        "cand2_score",
    ]


class RefusingTemplates(ScalarGalleryStub):
    def create_face_template(self, media: Media, role: TemplateRole) -> TemplateResult:
        return TemplateResult(ReturnStatus(ReturnCode.TEMPLATE_CREATION_ERROR))


def test_search_without_template_renders_unassigned_candidates(make_image):
    action = get_action("searchFace")
    item = action.parse(f"P1 {make_image('p.png')}")
    context = ActionContext(RefusingTemplates(), top_k=2, gallery=object())

    outcome = action.process(item, context)

    assert outcome.status.code == ReturnCode.TEMPLATE_CREATION_ERROR
    assert outcome.fields[2:] == ["6", "0", "NA", "NA", "0", "NA", "NA"]


def test_search_requires_gallery(make_image):
    action = get_action("searchFace")
    item = action.parse(f"P1 {make_image('p.png')}")

    with pytest.raises(ConfigurationError):
        action.process(item, ActionContext(ScalarGalleryStub(), top_k=2))


def test_enroll_requires_shard_writer(make_image):
    action = get_action("enrollFace")
    item = action.parse(f"S1 {make_image('s.png')}")

    with pytest.raises(ConfigurationError):
        action.process(item, ActionContext(ScalarGalleryStub()))


def test_template_actions_share_parsing():
    assert isinstance(get_action("searchIris"), TemplateAction)
    assert get_action("searchIris").modality is Modality.IRIS
