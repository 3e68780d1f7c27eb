import json
import os
from types import SimpleNamespace

import pytest

from speakapper.config import TranscriptionSettings
from speakapper.errors import (
    AuthenticationRequired,
    PipelineCancelled,
    ToolMissing,
    TranscriptionFailed,
)
from speakapper.models import AudioChunk, CancelToken, MediaSource, TranscriptionResult
from speakapper.services.media_service import MediaAcquirer
from speakapper.services.pipeline_service import SEGMENTED, SINGLE, TranscriptionPipeline
from speakapper.services.segment_service import Segmenter
from speakapper.services.transcription_client import TranscriptionClient

MIB = 1024 * 1024
VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


@pytest.fixture()
def temp_root(tmp_path):
    root = tmp_path / "work"
    root.mkdir()
    return root


@pytest.fixture()
def settings(temp_root):
    return TranscriptionSettings(api_key="test-key", temp_root=str(temp_root), chunk_delay_seconds=0)


@pytest.fixture()
def audio_file(tmp_path):
    path = tmp_path / "lecture.mp3"
    path.write_bytes(b"ID3" + b"\x00" * 64)
    return path


def _finished(returncode, stdout="", stderr=""):
    return SimpleNamespace(
        returncode=returncode,
        communicate=lambda timeout=None: (stdout, stderr),
        kill=lambda: None,
    )


class _FakeClient:
    def __init__(self, texts=None, fail_on_call=None):
        self.texts = texts or {}
        self.fail_on_call = fail_on_call
        self.calls = []

    def transcribe_file(self, path, filename, language="", timeout=None):
        self.calls.append({"path": path, "filename": filename, "language": language, "timeout": timeout})
        if self.fail_on_call == len(self.calls):
            raise TranscriptionFailed(status_code=500, body='{"error": "upstream"}')
        return TranscriptionResult(text=self.texts.get(filename, f"text for {filename}"))


class _FakeSegmenter:
    def __init__(self, names):
        self.names = names
        self.calls = 0

    def split(self, audio, workdir, cancel_token=None):
        self.calls += 1
        chunks = []
        for name in self.names:
            path = os.path.join(workdir, name)
            with open(path, "wb") as handle:
                handle.write(b"chunk")
            chunks.append(AudioChunk(path=path, sequence_index=int(name[6:9])))
        return chunks


def _chunk_names(count):
    return [f"chunk_{index:03d}.mp3" for index in range(count)]


def _pipeline(settings, client, segmenter=None, acquirer=None, sleeps=None):
    return TranscriptionPipeline(
        settings,
        client=client,
        segmenter=segmenter or _FakeSegmenter([]),
        acquirer=acquirer,
        sleep_fn=(sleeps.append if sleeps is not None else (lambda _seconds: None)),
    )


def test_small_local_file_uses_single_call_and_returns_text_verbatim(settings, audio_file, temp_root):
    responses = []

    class _FakeHttp:
        def post(self, url, **kwargs):
            responses.append(kwargs)
            return SimpleNamespace(status_code=200, text='{"text":"hello world"}', json=lambda: {"text": "hello world"})

    segmenter = _FakeSegmenter(_chunk_names(3))
    pipeline = TranscriptionPipeline(
        settings,
        client=TranscriptionClient(settings, http_client=_FakeHttp()),
        segmenter=segmenter,
    )

    transcript = pipeline.transcribe(MediaSource.local_file(str(audio_file), 5 * MIB), "")

    assert transcript == "hello world"
    assert len(responses) == 1
    assert segmenter.calls == 0
    assert responses[0]["timeout"] <= settings.single_shot_timeout_seconds


def test_threshold_boundary_stays_single_shot(settings, audio_file):
    client = _FakeClient()
    segmenter = _FakeSegmenter(_chunk_names(2))
    pipeline = _pipeline(settings, client, segmenter)

    outcome = pipeline.run(MediaSource.local_file(str(audio_file), 20 * MIB), "")

    assert outcome.mode == SINGLE
    assert len(client.calls) == 1
    assert segmenter.calls == 0


def test_large_file_is_segmented_and_joined_in_order(settings, audio_file):
    client = _FakeClient(texts={name: f"part {index + 1}" for index, name in enumerate(_chunk_names(5))})
    segmenter = _FakeSegmenter(_chunk_names(5))
    sleeps = []
    pipeline = _pipeline(settings, client, segmenter, sleeps=sleeps)

    outcome = pipeline.run(MediaSource.local_file(str(audio_file), 50 * MIB), "en")

    assert outcome.mode == SEGMENTED
    assert outcome.transcript == "part 1\npart 2\npart 3\npart 4\npart 5\n"
    assert outcome.chunk_count == 5
    assert len(client.calls) == 5
    assert all(call["language"] == "en" for call in client.calls)
    assert sleeps == [settings.chunk_delay_seconds] * 4


def test_chunk_order_follows_filenames_not_segmenter_order(settings, audio_file):
    client = _FakeClient(texts={"chunk_000.mp3": "B", "chunk_001.mp3": "A", "chunk_002.mp3": "C"})
    segmenter = _FakeSegmenter(["chunk_002.mp3", "chunk_000.mp3", "chunk_001.mp3"])
    pipeline = _pipeline(settings, client, segmenter)

    transcript = pipeline.transcribe(MediaSource.local_file(str(audio_file), 21 * MIB), "")

    assert transcript == "B\nA\nC\n"
    assert [call["filename"] for call in client.calls] == ["chunk_000.mp3", "chunk_001.mp3", "chunk_002.mp3"]


def test_chunk_text_is_trimmed_before_joining(settings, audio_file):
    client = _FakeClient(texts={"chunk_000.mp3": "  first \n", "chunk_001.mp3": "\tsecond  "})
    pipeline = _pipeline(settings, client, _FakeSegmenter(_chunk_names(2)))

    transcript = pipeline.transcribe(MediaSource.local_file(str(audio_file), 30 * MIB), "")

    assert transcript == "first\nsecond\n"


def test_chunk_failure_aborts_without_partial_transcript(settings, audio_file, temp_root):
    client = _FakeClient(fail_on_call=3)
    pipeline = _pipeline(settings, client, _FakeSegmenter(_chunk_names(5)))

    with pytest.raises(TranscriptionFailed) as excinfo:
        pipeline.transcribe(MediaSource.local_file(str(audio_file), 50 * MIB), "")

    assert len(client.calls) == 3
    assert [call["filename"] for call in client.calls] == _chunk_names(3)
    assert excinfo.value.upstream_status == 500
    assert "upstream" in excinfo.value.details
    assert os.listdir(temp_root) == []
    assert not audio_file.exists()


def test_workspace_and_source_removed_after_success(settings, audio_file, temp_root):
    pipeline = _pipeline(settings, _FakeClient(), _FakeSegmenter(_chunk_names(2)))

    pipeline.transcribe(MediaSource.local_file(str(audio_file), 40 * MIB), "")

    assert os.listdir(temp_root) == []
    assert not audio_file.exists()


def test_source_kept_when_caller_owns_it(settings, audio_file):
    pipeline = _pipeline(settings, _FakeClient(), _FakeSegmenter(_chunk_names(1)))

    pipeline.run(MediaSource.local_file(str(audio_file), 1 * MIB), "", cleanup_source=False)

    assert audio_file.exists()


def test_source_kept_on_segmented_failure_when_caller_owns_it(settings, audio_file, temp_root):
    pipeline = _pipeline(settings, _FakeClient(fail_on_call=2), _FakeSegmenter(_chunk_names(3)))

    with pytest.raises(TranscriptionFailed):
        pipeline.run(MediaSource.local_file(str(audio_file), 40 * MIB), "", cleanup_source=False)

    assert audio_file.exists()
    assert os.listdir(temp_root) == []


def test_missing_ffmpeg_fails_before_any_chunk_is_created(settings, audio_file, temp_root):
    class _NoSubprocess:
        def Popen(self, *_args, **_kwargs):
            raise AssertionError("ffmpeg must not be invoked")

    created = []
    segmenter = Segmenter(ffmpeg_binary_getter=lambda: "", subprocess_module=_NoSubprocess())
    original_split = segmenter.split

    def _tracking_split(audio, workdir, cancel_token=None):
        try:
            return original_split(audio, workdir, cancel_token=cancel_token)
        finally:
            created.extend(os.listdir(workdir))

    segmenter.split = _tracking_split
    client = _FakeClient()
    pipeline = _pipeline(settings, client, segmenter)

    with pytest.raises(ToolMissing) as excinfo:
        pipeline.transcribe(MediaSource.local_file(str(audio_file), 50 * MIB), "")

    assert excinfo.value.tool_name == "ffmpeg"
    assert created == []
    assert client.calls == []
    assert os.listdir(temp_root) == []


def test_segmented_run_with_real_segmenter_cleans_chunk_directory(settings, audio_file, temp_root):
    seen_dirs = []

    class _FakeFfmpeg:
        def Popen(self, cmd, **_kwargs):
            output_dir = os.path.dirname(cmd[-1])
            seen_dirs.append(output_dir)
            for index in range(3):
                with open(os.path.join(output_dir, f"chunk_{index:03d}.mp3"), "wb") as handle:
                    handle.write(b"mp3")
            return _finished(0)

    segmenter = Segmenter(ffmpeg_binary_getter=lambda: "/usr/bin/ffmpeg", subprocess_module=_FakeFfmpeg())
    client = _FakeClient(texts={name: name[:9] for name in _chunk_names(3)})
    pipeline = _pipeline(settings, client, segmenter)

    transcript = pipeline.transcribe(MediaSource.local_file(str(audio_file), 25 * MIB), "")

    assert transcript == "chunk_000\nchunk_001\nchunk_002\n"
    assert seen_dirs and str(temp_root) in seen_dirs[0]
    assert not os.path.exists(seen_dirs[0])
    assert os.listdir(temp_root) == []


def test_cancelled_token_stops_before_transcription_and_cleans_up(settings, audio_file, temp_root):
    token = CancelToken()
    token.cancel()
    client = _FakeClient()
    pipeline = _pipeline(settings, client, _FakeSegmenter(_chunk_names(2)))

    with pytest.raises(PipelineCancelled):
        pipeline.transcribe(MediaSource.local_file(str(audio_file), 1 * MIB), "", cancel_token=token)

    assert client.calls == []
    assert os.listdir(temp_root) == []
    assert not audio_file.exists()


def test_cancellation_between_chunks_stops_remaining_calls(settings, audio_file, temp_root):
    token = CancelToken()

    class _CancellingClient(_FakeClient):
        def transcribe_file(self, path, filename, language="", timeout=None):
            result = super().transcribe_file(path, filename, language=language, timeout=timeout)
            if len(self.calls) == 2:
                token.cancel()
            return result

    client = _CancellingClient()
    pipeline = _pipeline(settings, client, _FakeSegmenter(_chunk_names(4)))

    with pytest.raises(PipelineCancelled):
        pipeline.transcribe(MediaSource.local_file(str(audio_file), 50 * MIB), "", cancel_token=token)

    assert len(client.calls) == 2
    assert os.listdir(temp_root) == []


def test_expired_deadline_is_reported_as_cancellation(settings, audio_file):
    token = CancelToken(deadline=0.0)
    pipeline = _pipeline(settings, _FakeClient(), _FakeSegmenter(_chunk_names(1)))

    with pytest.raises(PipelineCancelled) as excinfo:
        pipeline.transcribe(MediaSource.local_file(str(audio_file), 1 * MIB), "", cancel_token=token)

    assert "deadline" in excinfo.value.details


class _LadderSubprocess:
    """Fails yt-dlp until ``succeed_on`` and writes the audio file on success."""

    def __init__(self, succeed_on=None, failure_output="ERROR: HTTP Error 403: Forbidden"):
        self.succeed_on = succeed_on
        self.failure_output = failure_output
        self.calls = []

    def Popen(self, args, **_kwargs):
        self.calls.append(list(args))
        if self.succeed_on == len(self.calls):
            template = args[args.index("-o") + 1]
            with open(template.replace("%(ext)s", "mp3"), "wb") as handle:
                handle.write(b"ID3" + b"\x00" * 32)
            return _finished(0, stdout="[ExtractAudio] done\n")
        return _finished(1, stderr=self.failure_output)


class _FailingPiped:
    def __init__(self):
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(url)
        return SimpleNamespace(status_code=500, text="piped unavailable", json=lambda: {})


def _which(name):
    return "/usr/bin/yt-dlp" if name == "yt-dlp" else None


def test_url_source_cookie_retry_success_proceeds_to_transcription(temp_root):
    settings = TranscriptionSettings(
        api_key="test-key",
        temp_root=str(temp_root),
        chunk_delay_seconds=0,
        cookies_browser="chrome",
    )
    ladder = _LadderSubprocess(succeed_on=6)
    acquirer = MediaAcquirer(settings, which_func=_which, subprocess_module=ladder, http_client=_FailingPiped())
    client = _FakeClient(texts={"download.mp3": "from youtube"})
    pipeline = _pipeline(settings, client, acquirer=acquirer)

    transcript = pipeline.transcribe_from_url(VIDEO_URL, "de")

    assert transcript == "from youtube"
    assert len(ladder.calls) == 6
    assert "--cookies-from-browser" in ladder.calls[5]
    assert client.calls[0]["language"] == "de"
    assert os.listdir(temp_root) == []


def test_url_source_all_strategies_fail_with_sign_in_message(temp_root):
    settings = TranscriptionSettings(
        api_key="test-key",
        temp_root=str(temp_root),
        cookies_browser="chrome",
    )
    ladder = _LadderSubprocess(failure_output="ERROR: [youtube] dQw4w9WgXcQ: Sign in to confirm you’re not a bot")
    piped = _FailingPiped()
    acquirer = MediaAcquirer(settings, which_func=_which, subprocess_module=ladder, http_client=piped)
    client = _FakeClient()
    pipeline = _pipeline(settings, client, acquirer=acquirer)

    with pytest.raises(AuthenticationRequired) as excinfo:
        pipeline.transcribe_from_url(VIDEO_URL, "")

    assert len(ladder.calls) == 6
    assert len(piped.calls) == 1
    assert client.calls == []
    assert len(excinfo.value.attempts) == 7
    assert excinfo.value.status_code == 403
    assert "sign in to confirm" in excinfo.value.details.lower()
    assert os.listdir(temp_root) == []


def test_log_events_are_json_lines(settings, audio_file, caplog):
    pipeline = _pipeline(settings, _FakeClient(), _FakeSegmenter(_chunk_names(1)))

    with caplog.at_level("INFO", logger="speakapper"):
        pipeline.transcribe(MediaSource.local_file(str(audio_file), 1 * MIB), "")

    events = [json.loads(record.getMessage())["event"] for record in caplog.records if record.name == "speakapper"]
    assert "transcription_mode" in events
    assert "transcription_complete" in events
