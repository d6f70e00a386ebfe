"""The four conversion forms as declarative presets.

A preset fixes everything that differs between forms: which files are
accepted, how many, how the request is shaped, what kind of result comes
back and how results are named for download. The session workflow itself is
identical for all of them.
"""
from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from typing import Callable, Optional

from .archive import ResultKind
from .errors import ValidationError
from .models import InputArtifact
from .security import entry_basename, slugify_prompt, split_stem


MODE_UPLOAD = "upload"
MODE_GENERATE = "generate"

AcceptPredicate = Callable[[str, Optional[str]], bool]
# (staged inputs, entry name, resolved options) -> download filename
FilenameRule = Callable[[list[InputArtifact], str, dict], str]


def guess_media_type(name: str, media_type: Optional[str] = None) -> str:
    ct = (media_type or "").split(";")[0].strip().lower()
    if ct and ct != "application/octet-stream":
        return ct
    guessed, _ = mimetypes.guess_type(name or "")
    return guessed or "application/octet-stream"


def accept_any_image(name: str, media_type: Optional[str]) -> bool:
    return guess_media_type(name, media_type).startswith("image/")


_PDF_SOURCE_IMAGE_TYPES = {"image/png", "image/jpeg", "image/gif", "image/bmp", "image/x-ms-bmp"}


def accept_pdf_source_image(name: str, media_type: Optional[str]) -> bool:
    return guess_media_type(name, media_type) in _PDF_SOURCE_IMAGE_TYPES


def accept_pdf(name: str, media_type: Optional[str]) -> bool:
    return guess_media_type(name, media_type) == "application/pdf"


@dataclass(frozen=True)
class OptionSpec:
    form_field: str
    default: str
    choices: tuple[str, ...] = ()


@dataclass(frozen=True)
class Preset:
    name: str
    title: str
    mode: str = MODE_UPLOAD
    endpoint_path: str = ""
    file_field: str = "file"
    multiple: bool = False
    accept: AcceptPredicate = accept_any_image
    options: dict[str, OptionSpec] = field(default_factory=dict)
    # Extra JSON parameters for generate-mode presets.
    parameters: dict = field(default_factory=dict)
    result_kind: ResultKind = ResultKind.SINGLE
    # Also expose the raw archive as a "download all" artifact.
    keep_bundle: bool = False
    failure_message: str = "Conversion failed."
    # Prepended to every submission failure message.
    failure_prefix: str = ""
    output_filename: Optional[FilenameRule] = None

    def resolve_options(self, options: Optional[dict] = None) -> dict:
        """Merge caller options over defaults and validate choices.

        Unknown keys are rejected; they would otherwise be silently dropped
        from the request.
        """
        supplied = dict(options or {})
        unknown = sorted(set(supplied) - set(self.options))
        if unknown:
            raise ValidationError(f"Unknown option(s): {', '.join(unknown)}", reason="invalidOption")

        resolved: dict[str, str] = {}
        for key, spec in self.options.items():
            value = str(supplied.get(key, spec.default)).strip().lower()
            if spec.choices and value not in spec.choices:
                raise ValidationError(
                    f"Unsupported {key} {value!r}; expected one of: {', '.join(spec.choices)}",
                    reason="invalidOption",
                )
            resolved[key] = value
        return resolved

    def form_fields(self, resolved_options: dict) -> dict[str, str]:
        return {spec.form_field: resolved_options[key] for key, spec in self.options.items()}

    def default_filename(self, inputs: list[InputArtifact], entry_name: str, resolved_options: dict) -> str:
        if self.output_filename is not None:
            return self.output_filename(inputs, entry_name, resolved_options)
        return entry_basename(entry_name) or "result"

    def bundle_filename(self, inputs: list[InputArtifact]) -> str:
        if inputs:
            return f"{split_stem(inputs[0].display_name) or 'converted'}.zip"
        return "converted.zip"


def _converted_image_name(inputs: list[InputArtifact], entry_name: str, options: dict) -> str:
    fmt = options.get("format", "jpeg")
    if not inputs:
        return f"converted_image.{fmt}"
    stem = split_stem(inputs[0].display_name)
    if not stem:
        return f"converted_image.{fmt}"
    return f"{stem}_converted.{fmt}"


def _pdf_document_name(inputs: list[InputArtifact], entry_name: str, options: dict) -> str:
    return "converted_document.pdf"


def _generated_image_name(inputs: list[InputArtifact], entry_name: str, options: dict) -> str:
    prompt = inputs[0].display_name if inputs else ""
    slug = slugify_prompt(prompt)
    if not slug:
        return "ai-generated-image.png"
    return f"{slug}.png"


IMAGE_CONVERT = Preset(
    name="image-convert",
    title="Image format converter",
    endpoint_path="/api/convert/image",
    file_field="file",
    accept=accept_any_image,
    options={"format": OptionSpec("toFormat", "jpeg", ("jpeg", "png", "gif", "bmp"))},
    result_kind=ResultKind.SINGLE,
    failure_message="Image conversion failed.",
    output_filename=_converted_image_name,
)

IMAGE_TO_PDF = Preset(
    name="image-to-pdf",
    title="Images to PDF",
    endpoint_path="/api/convert/image-to-pdf",
    file_field="files",
    multiple=True,
    accept=accept_pdf_source_image,
    result_kind=ResultKind.SINGLE,
    failure_message="PDF conversion failed.",
    output_filename=_pdf_document_name,
)

PDF_TO_IMAGE = Preset(
    name="pdf-to-image",
    title="PDF to images",
    endpoint_path="/api/convert/pdf-to-image",
    file_field="file",
    accept=accept_pdf,
    options={"format": OptionSpec("format", "png", ("png", "jpeg"))},
    result_kind=ResultKind.ARCHIVE,
    keep_bundle=True,
    failure_message="PDF to Image conversion failed.",
)

IMAGE_GENERATE = Preset(
    name="image-generate",
    title="AI image generator",
    mode=MODE_GENERATE,
    parameters={"sampleCount": 1},
    result_kind=ResultKind.SINGLE,
    failure_message="The API returned an error.",
    failure_prefix="Failed to generate image: ",
    output_filename=_generated_image_name,
)

PRESETS: dict[str, Preset] = {p.name: p for p in (IMAGE_CONVERT, IMAGE_TO_PDF, PDF_TO_IMAGE, IMAGE_GENERATE)}


def get_preset(name: str) -> Preset:
    try:
        return PRESETS[name]
    except KeyError:
        raise ValueError(f"Unknown preset: {name}") from None
