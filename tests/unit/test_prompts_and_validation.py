import os

import pytest

from app.exceptions import MediaStorageError, SubmissionValidationError
from app.jobs.models import ImageRef, JobRecord, MediaKind
from app.jobs.prompts import build_prompt
from app.jobs.validation import validate_image_set, validate_media_submission
from app.storage.media_store import MediaStore, build_object_key
from app.storage.temp_media import TempMediaStore

pytestmark = pytest.mark.unit


def test_video_prompt_covers_all_sections():
    prompt = build_prompt(MediaKind.VIDEO)
    assert prompt.startswith("请分析这个运动视频")
    for heading in ("动作识别", "体态评估", "技术要点", "问题识别", "改进建议", "安全提醒"):
        assert heading in prompt


def test_image_prompts_depend_on_count():
    assert "单帧分析" in build_prompt(MediaKind.IMAGE, 1)
    assert "2张图片对比分析" in build_prompt(MediaKind.IMAGE, 2)
    assert "3张图片对比分析" in build_prompt(MediaKind.IMAGE, 3)


@pytest.mark.parametrize("count", [0, 4])
def test_image_prompt_rejects_bad_counts(count):
    with pytest.raises(ValueError):
        build_prompt(MediaKind.IMAGE, count)


def test_media_submission_checks(media_store):
    url = "https://pub-acct.r2.dev/videos/a.mp4"
    validate_media_submission(media_store, url, "a.mp4", "video/mp4", MediaKind.VIDEO)

    with pytest.raises(SubmissionValidationError, match="Missing"):
        validate_media_submission(media_store, url, "", "video/mp4", MediaKind.VIDEO)
    with pytest.raises(SubmissionValidationError, match="Invalid content type"):
        validate_media_submission(media_store, url, "a.mp4", "application/pdf", MediaKind.VIDEO)
    with pytest.raises(SubmissionValidationError, match="Invalid media URL"):
        validate_media_submission(media_store, "https://evil.example/a.mp4", "a.mp4", "video/mp4", MediaKind.VIDEO)


def test_image_set_checks(media_store):
    good = ImageRef(url="https://pub-acct.r2.dev/images/1.jpg", filename="1.jpg", content_type="image/jpeg")
    validate_image_set(media_store, [good], max_images=3)

    with pytest.raises(SubmissionValidationError):
        validate_image_set(media_store, [], max_images=3)
    with pytest.raises(SubmissionValidationError):
        validate_image_set(media_store, [good.model_copy(update={"content_type": "video/mp4"})], max_images=3)
    with pytest.raises(SubmissionValidationError):
        validate_image_set(media_store, [good.model_copy(update={"filename": ""})], max_images=3)


def test_write_target_is_presigned_put(media_store, s3_client):
    target = media_store.create_write_target("Squat Clip.MOV", "video/quicktime")

    assert target.object_key.startswith("videos/")
    assert target.object_key.endswith(".mov")
    assert target.public_url == f"https://pub-acct.r2.dev/{target.object_key}"
    assert target.expires_in == 300
    _, kwargs = s3_client.generate_presigned_url.call_args
    assert kwargs["Params"] == {"Bucket": "bucket", "Key": target.object_key, "ContentType": "video/quicktime"}
    assert media_store.is_public_url(target.public_url)


def test_public_url_prefers_configured_base(settings, s3_client):
    settings.media_public_base_url = "https://media.example.com/"
    store = MediaStore(settings, s3_client=s3_client)

    assert store.public_url_for("images/x.png") == "https://media.example.com/images/x.png"
    assert store.is_public_url("https://media.example.com/images/x.png")
    assert not store.is_public_url("https://pub-acct.r2.dev/images/x.png")


def test_unconfigured_store_refuses_write_targets(settings):
    settings.s3_access_key_id = ""
    store = MediaStore(settings)

    assert not store.configured
    with pytest.raises(MediaStorageError):
        store.create_write_target("a.mp4", "video/mp4")


def test_object_keys_are_unique_and_typed():
    first = build_object_key("a.jpg", "image/jpeg")
    second = build_object_key("a.jpg", "image/jpeg")
    assert first.startswith("images/") and first != second
    assert build_object_key("noext", "video/mp4").endswith(".bin")


def test_temp_media_paths_are_per_attempt_and_released(tmp_path):
    store = TempMediaStore(str(tmp_path / "scratch"))
    path = store.get_attempt_path("job", "attempt", "../../etc/passwd")

    assert os.path.dirname(os.path.dirname(path)) == store.base_dir
    with open(path, "wb") as fh:
        fh.write(b"x")

    assert store.release(path)
    assert os.listdir(store.base_dir) == []
    assert store.release(None)


def test_image_refs_rebuilt_from_record():
    record = JobRecord(
        media_reference="https://pub-acct.r2.dev/images/1.jpg",
        media_kind=MediaKind.IMAGE,
        original_filename="1.jpg, 2.png",
        content_type="image/jpeg, image/png",
        image_urls=["https://pub-acct.r2.dev/images/1.jpg", "https://pub-acct.r2.dev/images/2.png"],
        item_count=2,
    )
    refs = record.image_refs()
    assert [(r.filename, r.content_type) for r in refs] == [("1.jpg", "image/jpeg"), ("2.png", "image/png")]


@pytest.mark.parametrize("url", [
    "https://attacker.example/pub-acct.r2.dev/x.mp4",
    "http://169.254.169.254/latest/meta-data?pub-acct.r2.dev",
    "http://pub-acct.r2.dev/videos/x.mp4",
    "https://pub-acct.r2.dev.attacker.example/videos/x.mp4",
    "https://user@pub-acct.r2.dev/videos/x.mp4",
    "not a url",
])
def test_origin_check_rejects_lookalike_urls(media_store, url):
    assert not media_store.is_public_url(url)
    with pytest.raises(SubmissionValidationError):
        validate_media_submission(media_store, url, "x.mp4", "video/mp4", MediaKind.VIDEO)


def test_origin_check_matches_custom_domain_host_exactly(settings, s3_client):
    settings.media_custom_domain = "cdn.example.com"
    store = MediaStore(settings, s3_client=s3_client)

    assert store.is_public_url("https://cdn.example.com/videos/x.mp4")
    assert not store.is_public_url("https://evil.example/?cdn.example.com")
    assert not store.is_public_url("https://cdn.example.com.evil.example/videos/x.mp4")


def test_origin_check_keeps_base_url_path_prefix(settings, s3_client):
    settings.media_public_base_url = "https://media.example.com/uploads"
    store = MediaStore(settings, s3_client=s3_client)

    assert store.is_public_url("https://media.example.com/uploads/videos/x.mp4")
    assert not store.is_public_url("https://media.example.com/other/x.mp4")
    assert not store.is_public_url("https://media.example.com:8443/uploads/x.mp4")
