import asyncio
import logging
import os
import tempfile
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from PIL import Image, ImageColor, UnidentifiedImageError
from pydantic import Field

from config.settings import EngineSettings
from core.types_registry import ExecutionContext, ExecutionResult, NodeConfigError, NodeExecutionError
from nodes.base.definition import create_node_definition
from nodes.base.executable import (
    NodeExecutable,
    create_node_executable,
    failure_result,
    get_input_value,
    result_metadata,
    success_result,
)
from nodes.base.metadata import create_node_metadata
from nodes.base.parameters import create_node_parameters
from nodes.base.ports import create_node_ports

logger = logging.getLogger(__name__)

CompositeOperation = Literal["overlay", "merge", "composite", "blend"]

_PIL_FORMATS = {"png": "PNG", "jpeg": "JPEG", "webp": "WEBP"}

image_composite_parameters = create_node_parameters(
    {
        "operation": (CompositeOperation, Field(default="overlay", description="Type of image composition operation")),
        "images": (list[str], Field(default_factory=list, description="Image paths")),
        "output_path": (str | None, Field(default=None, description="Where to write the result")),
        "output_format": (Literal["png", "jpeg", "webp"], Field(default="png", description="Output format")),
        "quality": (int, Field(default=90, ge=1, le=100, description="Quality for lossy formats")),
        "width": (int | None, Field(default=None, ge=1, description="Output width")),
        "height": (int | None, Field(default=None, ge=1, description="Output height")),
        "background": (str, Field(default="#FFFFFF", description="Canvas background colour")),
        "direction": (Literal["horizontal", "vertical"], Field(default="horizontal", description="Merge direction")),
        "opacity": (float, Field(default=0.5, ge=0.0, le=1.0, description="Blend factor")),
        "position_x": (int, Field(default=0, description="Overlay left offset")),
        "position_y": (int, Field(default=0, description="Overlay top offset")),
    },
    {
        "operation": "overlay",
        "images": [],
        "output_format": "png",
        "quality": 90,
        "background": "#FFFFFF",
        "direction": "horizontal",
        "opacity": 0.5,
        "position_x": 0,
        "position_y": 0,
    },
    {
        "operation": {
            "control_type": "select",
            "label": "Operation",
            "placeholder": "Default: overlay",
            "options": [
                {"value": "overlay", "label": "Overlay"},
                {"value": "merge", "label": "Merge"},
                {"value": "composite", "label": "Composite"},
                {"value": "blend", "label": "Blend"},
            ],
        },
        "images": {"control_type": "textarea", "label": "Images", "rows": 3},
        "output_path": {"control_type": "text", "label": "Output"},
        "width": {"control_type": "number", "label": "Width", "min": 1},
        "height": {"control_type": "number", "label": "Height", "min": 1},
        "quality": {"control_type": "range", "label": "Quality", "min": 1, "max": 100},
    },
    model_name="ImageCompositeParams",
)

image_composite_definition = create_node_definition(
    id="image-composite",
    type="image-composite",
    metadata=create_node_metadata(
        {
            "id": "image-composite",
            "name": "Image Composite",
            "description": "Overlay, merge and blend images",
            "category": "media",
            "icon": "image",
            "keywords": ["image", "composite", "overlay", "merge", "blend", "picture", "graphics"],
        }
    ),
    parameters=image_composite_parameters,
    ports=create_node_ports(
        {
            "input": [
                {"id": "base_image", "name": "Base image", "data_type": "image"},
                {"id": "overlay_image", "name": "Overlay image", "data_type": "image"},
                {"id": "images", "name": "Images", "data_type": "array", "multiple": True},
            ],
            "output": [
                {"id": "result", "name": "Result", "data_type": "string"},
                {"id": "image_path", "name": "Image path", "data_type": "file"},
                {"id": "width", "name": "Width", "data_type": "number"},
                {"id": "height", "name": "Height", "data_type": "number"},
            ],
            "error": [{"id": "error", "name": "Error", "data_type": "string"}],
        }
    ),
)


def image_path_of(value: Any) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping) and isinstance(value.get("path"), str):
        return value["path"]
    return None


def _open(path: str) -> Image.Image:
    if not os.path.exists(path):
        raise NodeExecutionError(f"Image file not found: {path}")
    with Image.open(path) as img:
        return img.convert("RGBA")


def _overlay(base: str, top: str, params: dict[str, Any]) -> Image.Image:
    canvas = _open(base)
    layer = _open(top)
    canvas.paste(layer, (params["position_x"], params["position_y"]), layer)
    return canvas


def _merge(paths: list[str], params: dict[str, Any], background: tuple[int, ...]) -> Image.Image:
    if len(paths) < 2:
        raise NodeConfigError("Merge operation requires at least 2 images")
    images = [_open(p) for p in paths]
    if params["direction"] == "horizontal":
        size = (sum(i.width for i in images), max(i.height for i in images))
    else:
        size = (max(i.width for i in images), sum(i.height for i in images))
    canvas = Image.new("RGBA", size, background)
    offset = 0
    for img in images:
        position = (offset, 0) if params["direction"] == "horizontal" else (0, offset)
        canvas.paste(img, position, img)
        offset += img.width if params["direction"] == "horizontal" else img.height
    return canvas


def _composite(paths: list[str], background: tuple[int, ...]) -> Image.Image:
    if not paths:
        raise NodeConfigError("No valid source image found")
    images = [_open(p) for p in paths]
    canvas = Image.new("RGBA", images[0].size, background)
    for img in images:
        canvas.alpha_composite(img.crop((0, 0, canvas.width, canvas.height)))
    return canvas


def _blend(paths: list[str], opacity: float) -> Image.Image:
    if len(paths) < 2:
        raise NodeConfigError("Blend operation requires at least 2 images")
    result = _open(paths[0])
    for path in paths[1:]:
        result = Image.blend(result, _open(path).resize(result.size), opacity)
    return result


def _resize(img: Image.Image, width: int | None, height: int | None) -> Image.Image:
    if not width and not height:
        return img
    if width and not height:
        height = max(1, round(img.height * width / img.width))
    elif height and not width:
        width = max(1, round(img.width * height / img.height))
    return img.resize((width, height))


def compose_image(inputs: dict[str, Any], params: dict[str, Any], output_path: str) -> dict[str, Any]:
    background = ImageColor.getcolor(params["background"], "RGBA")
    operation = params["operation"]
    paths = inputs["images"]

    if operation == "overlay":
        base, top = inputs["base_image"], inputs["overlay_image"]
        if not base or not top:
            if len(paths) < 2:
                raise NodeConfigError("Overlay operation requires both base and overlay images")
            base, top = paths[0], paths[1]
        result = _overlay(base, top, params)
    elif operation == "merge":
        result = _merge(paths, params, background)
    elif operation == "blend":
        result = _blend(([inputs["base_image"]] if inputs["base_image"] else []) + paths, params["opacity"])
    else:
        result = _composite(([inputs["base_image"]] if inputs["base_image"] else []) + paths, background)

    result = _resize(result, params.get("width"), params.get("height"))
    fmt = params["output_format"]
    if fmt == "jpeg":
        flattened = Image.new("RGB", result.size, background[:3])
        flattened.paste(result, mask=result.getchannel("A"))
        result = flattened

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    save_kwargs: dict[str, Any] = {}
    if fmt in ("jpeg", "webp"):
        save_kwargs["quality"] = params["quality"]
    result.save(output_path, _PIL_FORMATS[fmt], **save_kwargs)
    return {"width": result.width, "height": result.height, "size": os.path.getsize(output_path)}


def create_image_composite_executable(settings: EngineSettings | None = None) -> NodeExecutable:
    async def execute(context: ExecutionContext, params: dict[str, Any]) -> ExecutionResult:
        raw_images = get_input_value(context, "images", params, [])
        if not isinstance(raw_images, (list, tuple)):
            raw_images = [raw_images]
        inputs = {
            "base_image": image_path_of(get_input_value(context, "base_image")),
            "overlay_image": image_path_of(get_input_value(context, "overlay_image")),
            "images": [p for p in (image_path_of(v) for v in raw_images) if p],
        }
        fmt = params["output_format"]
        temp_dir = settings.temp_dir if settings else None
        output_path = params.get("output_path") or os.path.join(
            temp_dir or tempfile.gettempdir(),
            f"image-composite-{uuid.uuid4().hex[:12]}.{'jpg' if fmt == 'jpeg' else fmt}",
        )

        context.logger.info(f"Performing {params['operation']} operation -> {output_path}")
        try:
            info = await asyncio.to_thread(compose_image, inputs, params, output_path)
        except (NodeExecutionError, NodeConfigError, OSError, ValueError, UnidentifiedImageError) as e:
            context.logger.error(f"Image composition failed: {e}")
            return failure_result(f"Image composition failed: {e}")

        outputs = {
            "result": output_path,
            "image_path": output_path,
            "width": info["width"],
            "height": info["height"],
            "format": fmt,
            "size": info["size"],
            "success": True,
        }
        return success_result(outputs, **result_metadata(context, "image-composite", operation=params["operation"]))

    return create_node_executable(execute, validate_config=image_composite_parameters.parse)
