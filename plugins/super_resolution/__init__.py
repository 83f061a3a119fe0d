"""Super resolution plugin."""

manifest = {
    "title": "Super Resolution",
    "summary": "Pick a Swin2SR or Real-ESRGAN model, upscale an image and download the result.",
    "blueprint": "super_resolution",
    "category": "Image Enhancement",
}


__all__ = ["manifest"]
