"""Tests for the conversion session state machine."""

import asyncio
import base64
import threading

import httpx
import pytest

from conftest import PNG_BYTES, make_remote, make_zip
from mytools_backend import session as session_module
from mytools_backend.archive import ResultKind
from mytools_backend.errors import SessionClosedError, ValidationError
from mytools_backend.models import SessionStatus
from mytools_backend.presets import IMAGE_CONVERT, IMAGE_GENERATE, IMAGE_TO_PDF, PDF_TO_IMAGE, Preset, accept_any_image
from mytools_backend.session import ConversionSession


# Multi-image in, archive out: the shape used by the end-to-end scenario.
IMAGES_TO_ARCHIVE = Preset(
    name="images-to-archive",
    title="images to archive",
    endpoint_path="/api/convert/batch",
    file_field="files",
    multiple=True,
    accept=accept_any_image,
    result_kind=ResultKind.ARCHIVE,
)


def _gated_remote(response_factory):
    """Remote whose responses wait until the returned event is set."""
    gate = asyncio.Event()

    async def handler(request):
        await gate.wait()
        return response_factory(request)

    return make_remote(handler), gate


class TestStaging:
    def test_initial_state(self):
        s = ConversionSession(IMAGE_CONVERT, make_remote(lambda r: httpx.Response(500)))
        assert s.status is SessionStatus.IDLE
        assert s.inputs == ()
        assert s.outputs == ()
        assert len(s.ledger) == 0

    def test_select_stages_and_registers_previews(self, png_file):
        s = ConversionSession(IMAGE_TO_PDF, make_remote(lambda r: httpx.Response(500)))
        assert s.select_inputs([png_file("a.png"), png_file("b.png")]) is SessionStatus.STAGED

        assert [a.display_name for a in s.inputs] == ["a.png", "b.png"]
        for a in s.inputs:
            assert s.ledger.resolve(a.preview_handle).payload == PNG_BYTES

    def test_invalid_files_are_excluded_and_reported(self, png_file, pdf_file):
        s = ConversionSession(IMAGE_TO_PDF, make_remote(lambda r: httpx.Response(500)))
        s.select_inputs([png_file("a.png"), pdf_file("doc.pdf")])

        assert s.status is SessionStatus.STAGED
        assert [a.display_name for a in s.inputs] == ["a.png"]
        assert s.rejected == ["doc.pdf"]

    def test_no_valid_input_fails(self, png_file):
        s = ConversionSession(PDF_TO_IMAGE, make_remote(lambda r: httpx.Response(500)))
        s.select_inputs([png_file("a.png")])

        assert s.status is SessionStatus.FAILED
        assert s.error.kind == "validation"
        assert s.error.reason == "noValidInput"
        assert s.rejected == ["a.png"]
        assert len(s.ledger) == 0

    def test_single_input_preset_keeps_first(self, png_file):
        s = ConversionSession(IMAGE_CONVERT, make_remote(lambda r: httpx.Response(500)))
        s.select_inputs([png_file("a.png"), png_file("b.png")])

        assert [a.display_name for a in s.inputs] == ["a.png"]
        assert s.rejected == ["b.png"]

    def test_reselect_revokes_previous_inputs(self, png_file):
        s = ConversionSession(IMAGE_CONVERT, make_remote(lambda r: httpx.Response(500)))
        s.select_inputs([png_file("a.png")])
        old = s.inputs[0].preview_handle

        s.select_inputs([png_file("b.png")])

        assert s.ledger.resolve(old) is None
        assert len(s.ledger) == 1

    def test_select_prompt(self):
        s = ConversionSession(IMAGE_GENERATE, make_remote(lambda r: httpx.Response(500)))
        assert s.select_prompt("  a fox  ") is SessionStatus.STAGED
        assert s.inputs[0].display_name == "a fox"

    def test_blank_prompt_fails(self):
        s = ConversionSession(IMAGE_GENERATE, make_remote(lambda r: httpx.Response(500)))
        s.select_prompt("   ")
        assert s.status is SessionStatus.FAILED
        assert s.error.reason == "noValidInput"
        assert s.error.message == "Please enter a prompt to generate an image."

    def test_files_on_generate_preset_are_rejected(self, png_file):
        s = ConversionSession(IMAGE_GENERATE, make_remote(lambda r: httpx.Response(500)))
        with pytest.raises(ValueError):
            s.select_inputs([png_file()])
        assert s.status is SessionStatus.IDLE

    def test_prompt_on_upload_preset_is_rejected(self):
        s = ConversionSession(IMAGE_CONVERT, make_remote(lambda r: httpx.Response(500)))
        with pytest.raises(ValueError):
            s.select_prompt("x")


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_without_input_leaves_state_unchanged(self):
        s = ConversionSession(IMAGE_CONVERT, make_remote(lambda r: httpx.Response(500)))
        with pytest.raises(ValidationError) as exc:
            await s.submit()
        assert exc.value.reason == "noInput"
        assert s.status is SessionStatus.IDLE
        assert s.submission == 0

    @pytest.mark.asyncio
    async def test_submit_after_no_valid_input_keeps_failed(self, png_file):
        s = ConversionSession(PDF_TO_IMAGE, make_remote(lambda r: httpx.Response(500)))
        s.select_inputs([png_file()])
        before = s.error
        with pytest.raises(ValidationError):
            await s.submit()
        assert s.status is SessionStatus.FAILED
        assert s.error == before

    @pytest.mark.asyncio
    async def test_invalid_option_leaves_state_unchanged(self, png_file):
        s = ConversionSession(IMAGE_CONVERT, make_remote(lambda r: httpx.Response(200, content=b"x")))
        s.select_inputs([png_file()])
        with pytest.raises(ValidationError):
            await s.submit({"format": "tiff"})
        assert s.status is SessionStatus.STAGED

    @pytest.mark.asyncio
    async def test_single_result(self, png_file):
        remote = make_remote(lambda r: httpx.Response(200, content=b"GIF89a", headers={"content-type": "image/gif"}))
        s = ConversionSession(IMAGE_CONVERT, remote)
        s.select_inputs([png_file("cat.png")])

        assert await s.submit({"format": "gif"}) is SessionStatus.READY
        assert len(s.outputs) == 1
        out = s.outputs[0]
        assert out.payload == b"GIF89a"
        assert out.mime_hint == "image/gif"
        assert out.default_filename == "cat_converted.gif"
        assert s.ledger.resolve(out.preview_handle).payload == b"GIF89a"

    @pytest.mark.asyncio
    async def test_archive_result_in_order(self, pdf_file, zip_remote):
        s = ConversionSession(PDF_TO_IMAGE, zip_remote({"a.png": b"A", "b.png": b"B"}))
        s.select_inputs([pdf_file("report.pdf")])

        await s.submit()

        assert s.status is SessionStatus.READY
        assert [o.display_name for o in s.outputs] == ["a.png", "b.png"]
        assert [o.mime_hint for o in s.outputs] == ["image/png", "image/png"]
        assert s.bundle is not None
        assert s.bundle.default_filename == "report.zip"
        assert s.ledger.resolve(s.bundle.preview_handle) is not None

    @pytest.mark.asyncio
    async def test_empty_archive_is_ready_not_failed(self, pdf_file, zip_remote):
        s = ConversionSession(PDF_TO_IMAGE, zip_remote({}))
        s.select_inputs([pdf_file()])

        await s.submit()

        assert s.status is SessionStatus.READY
        assert s.outputs == ()
        assert s.error is None

    @pytest.mark.asyncio
    async def test_remote_failure(self, png_file):
        s = ConversionSession(IMAGE_CONVERT, make_remote(lambda r: httpx.Response(422, text="cannot read image")))
        s.select_inputs([png_file()])

        assert await s.submit() is SessionStatus.FAILED
        assert s.error.kind == "remote"
        assert s.error.status == 422
        assert s.error.message == "cannot read image"
        assert s.outputs == ()
        # Inputs survive so the user can retry.
        assert len(s.inputs) == 1

    @pytest.mark.asyncio
    async def test_decode_failure(self, pdf_file):
        s = ConversionSession(PDF_TO_IMAGE, make_remote(lambda r: httpx.Response(200, content=b"not a zip")))
        s.select_inputs([pdf_file()])

        await s.submit()

        assert s.status is SessionStatus.FAILED
        assert s.error.kind == "decode"
        assert s.error.reason == "malformed"
        assert s.bundle is None

    @pytest.mark.asyncio
    async def test_failure_clears_previous_outputs(self, png_file):
        responses = [httpx.Response(200, content=b"one"), httpx.Response(500, text="boom")]
        s = ConversionSession(IMAGE_CONVERT, make_remote(lambda r: responses.pop(0)))
        s.select_inputs([png_file()])
        await s.submit()
        old = s.outputs[0].preview_handle

        await s.submit()

        assert s.status is SessionStatus.FAILED
        assert s.outputs == ()
        assert s.ledger.resolve(old) is None

    @pytest.mark.asyncio
    async def test_resubmit_replaces_output_set(self, png_file):
        responses = [httpx.Response(200, content=b"one"), httpx.Response(200, content=b"two")]
        s = ConversionSession(IMAGE_CONVERT, make_remote(lambda r: responses.pop(0)))
        s.select_inputs([png_file()])
        await s.submit()
        first = s.outputs[0].preview_handle

        await s.submit({"format": "png"})

        assert s.ledger.resolve(first) is None
        assert s.outputs[0].payload == b"two"
        assert len(s.ledger) == 2  # one input + one output

    @pytest.mark.asyncio
    async def test_generate(self):
        encoded = base64.b64encode(PNG_BYTES).decode("ascii")
        s = ConversionSession(
            IMAGE_GENERATE,
            make_remote(lambda r: httpx.Response(200, json={"predictions": [{"bytesBase64Encoded": encoded}]})),
        )
        s.select_prompt("A red fox")

        await s.submit()

        assert s.status is SessionStatus.READY
        assert s.outputs[0].payload == PNG_BYTES
        assert s.outputs[0].default_filename == "a-red-fox.png"

    @pytest.mark.asyncio
    async def test_generate_invalid_response(self):
        s = ConversionSession(IMAGE_GENERATE, make_remote(lambda r: httpx.Response(200, json={"predictions": []})))
        s.select_prompt("x")

        await s.submit()

        assert s.status is SessionStatus.FAILED
        assert s.error.kind == "invalid_response"
        assert s.error.message == "Failed to generate image: API did not return a valid image."

    @pytest.mark.asyncio
    async def test_generate_remote_error_is_prefixed(self):
        s = ConversionSession(
            IMAGE_GENERATE,
            make_remote(lambda r: httpx.Response(429, json={"error": {"message": "Quota exceeded"}})),
        )
        s.select_prompt("x")

        await s.submit()

        assert s.error.kind == "remote"
        assert s.error.status == 429
        assert s.error.message == "Failed to generate image: Quota exceeded"

    @pytest.mark.asyncio
    async def test_status_while_in_flight(self, png_file):
        remote, gate = _gated_remote(lambda r: httpx.Response(200, content=b"x"))
        s = ConversionSession(IMAGE_CONVERT, remote)
        s.select_inputs([png_file()])

        task = asyncio.create_task(s.submit())
        await asyncio.sleep(0)
        assert s.status is SessionStatus.SUBMITTING
        assert s.outputs == ()

        gate.set()
        assert await task is SessionStatus.READY


class TestStaleResponses:
    @pytest.mark.asyncio
    async def test_stale_success_is_ignored(self, png_file, pdf_file):
        archive = make_zip({"p1.png": b"1", "p2.png": b"2"})
        remote, gate = _gated_remote(lambda r: httpx.Response(200, content=archive))
        s = ConversionSession(PDF_TO_IMAGE, remote)
        s.select_inputs([pdf_file("first.pdf")])

        task = asyncio.create_task(s.submit())
        await asyncio.sleep(0)
        assert s.status is SessionStatus.SUBMITTING

        s.select_inputs([pdf_file("second.pdf")])
        gate.set()
        await task

        assert s.status is SessionStatus.STAGED
        assert [a.display_name for a in s.inputs] == ["second.pdf"]
        assert s.outputs == ()
        assert s.bundle is None
        assert len(s.ledger) == 1

    @pytest.mark.asyncio
    async def test_stale_failure_is_ignored(self, png_file):
        remote, gate = _gated_remote(lambda r: httpx.Response(500, text="late failure"))
        s = ConversionSession(IMAGE_CONVERT, remote)
        s.select_inputs([png_file("a.png")])

        task = asyncio.create_task(s.submit())
        await asyncio.sleep(0)
        s.select_inputs([png_file("b.png")])
        gate.set()
        await task

        assert s.status is SessionStatus.STAGED
        assert s.error is None

    @pytest.mark.asyncio
    async def test_newer_submission_result_wins(self, png_file):
        gates = [asyncio.Event(), asyncio.Event()]

        async def handler(request):
            if b'filename="a.png"' in request.content:
                await gates[0].wait()
                return httpx.Response(200, content=b"old")
            await gates[1].wait()
            return httpx.Response(200, content=b"new")

        s = ConversionSession(IMAGE_CONVERT, make_remote(handler))
        s.select_inputs([png_file("a.png")])
        first = asyncio.create_task(s.submit())
        await asyncio.sleep(0)

        s.select_inputs([png_file("b.png")])
        second = asyncio.create_task(s.submit())
        await asyncio.sleep(0)

        gates[1].set()
        await second
        assert [o.payload for o in s.outputs] == [b"new"]

        gates[0].set()
        await first
        assert s.status is SessionStatus.READY
        assert [o.payload for o in s.outputs] == [b"new"]
        assert len(s.ledger) == 2

    @pytest.mark.asyncio
    async def test_reselect_during_decode_drops_result(self, pdf_file, monkeypatch):
        entered = threading.Event()
        release = threading.Event()
        real = session_module._materialize

        def slow_materialize(result, name):
            entered.set()
            release.wait(timeout=5)
            return real(result, name)

        monkeypatch.setattr(session_module, "_materialize", slow_materialize)
        archive = make_zip({"p1.png": b"1"})
        s = ConversionSession(PDF_TO_IMAGE, make_remote(lambda r: httpx.Response(200, content=archive)))
        s.select_inputs([pdf_file("first.pdf")])

        task = asyncio.create_task(s.submit())
        while not entered.is_set():
            await asyncio.sleep(0.01)
        assert s.status is SessionStatus.DECODING

        s.select_inputs([pdf_file("second.pdf")])
        release.set()
        await task

        assert s.status is SessionStatus.STAGED
        assert s.outputs == ()
        assert len(s.ledger) == 1

    @pytest.mark.asyncio
    async def test_reset_during_flight_returns_to_idle(self, png_file):
        remote, gate = _gated_remote(lambda r: httpx.Response(200, content=b"x"))
        s = ConversionSession(IMAGE_CONVERT, remote)
        s.select_inputs([png_file()])

        task = asyncio.create_task(s.submit())
        await asyncio.sleep(0)
        s.reset()
        gate.set()
        await task

        assert s.status is SessionStatus.IDLE
        assert len(s.ledger) == 0

    @pytest.mark.asyncio
    async def test_cancelled_submission_fails(self, png_file):
        remote, gate = _gated_remote(lambda r: httpx.Response(200, content=b"x"))
        s = ConversionSession(IMAGE_CONVERT, remote)
        s.select_inputs([png_file()])

        task = asyncio.create_task(s.submit())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert s.status is SessionStatus.FAILED
        assert s.error.reason == "cancelled"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_end_to_end_two_images_to_archive(self, png_file, zip_remote, requests_seen):
        s = ConversionSession(IMAGES_TO_ARCHIVE, zip_remote({"a.png": b"A", "b.png": b"B"}))
        s.select_inputs([png_file("one.png"), png_file("two.png")])
        input_handles = [a.preview_handle for a in s.inputs]

        await s.submit()

        assert s.status is SessionStatus.READY
        assert [o.display_name for o in s.outputs] == ["a.png", "b.png"]
        output_handles = [o.preview_handle for o in s.outputs]
        assert all(s.ledger.resolve(h) is not None for h in output_handles)
        assert requests_seen[0].content.count(b'name="files"') == 2

        revoked_before = s.ledger.revoked_total
        s.reset()

        assert s.status is SessionStatus.IDLE
        assert all(s.ledger.resolve(h) is None for h in input_handles + output_handles)
        assert s.ledger.revoked_total - revoked_before == 4
        assert len(s.ledger) == 0

    def test_reset_is_idempotent(self, png_file):
        s = ConversionSession(IMAGE_CONVERT, make_remote(lambda r: httpx.Response(500)))
        s.select_inputs([png_file()])
        s.reset()
        s.reset()
        assert s.status is SessionStatus.IDLE
        assert s.ledger.revoked_total == 1

    @pytest.mark.asyncio
    async def test_async_context_manager_tears_down(self, pdf_file, zip_remote):
        async with ConversionSession(PDF_TO_IMAGE, zip_remote({"a.png": b"A"})) as s:
            s.select_inputs([pdf_file()])
            await s.submit()
            assert len(s.ledger) == 3  # input, output, bundle

        assert s.closed
        assert len(s.ledger) == 0
        with pytest.raises(SessionClosedError):
            s.select_inputs([pdf_file()])

    @pytest.mark.asyncio
    async def test_close_during_flight_drops_result(self, png_file):
        remote, gate = _gated_remote(lambda r: httpx.Response(200, content=b"x"))
        s = ConversionSession(IMAGE_CONVERT, remote)
        s.select_inputs([png_file()])
        task = asyncio.create_task(s.submit())
        await asyncio.sleep(0)

        s.close()
        gate.set()
        await task

        assert s.status is SessionStatus.IDLE
        assert len(s.ledger) == 0

    @pytest.mark.asyncio
    async def test_snapshot(self, pdf_file, zip_remote):
        s = ConversionSession(PDF_TO_IMAGE, zip_remote({"pages/p1.png": b"1"}))
        s.select_inputs([pdf_file("r.pdf")])
        await s.submit()

        snap = s.snapshot()

        assert snap.status is SessionStatus.READY
        assert snap.preset == "pdf-to-image"
        assert snap.inputs[0].name == "r.pdf"
        assert snap.outputs[0].name == "pages/p1.png"
        assert snap.outputs[0].default_filename == "p1.png"
        assert snap.outputs[0].url == f"/s/{s.session_id}/p/{snap.outputs[0].handle_id}"
        assert snap.bundle.default_filename == "r.zip"
        assert s.download_name(snap.outputs[0].handle_id) == "p1.png"
        assert s.export_entries() == [("p1.png", b"1")]
