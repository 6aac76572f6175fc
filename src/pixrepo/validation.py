from typing import Optional

from pixrepo.errors import ValidationError
from pixrepo.folders import clean_folder_name


def check_image_type(mime_type: Optional[str]) -> str:
    if not mime_type or not mime_type.startswith("image/"):
        raise ValidationError(
            f"Only image files can be uploaded, got {mime_type or 'no type'}",
            field="mimeType",
        )
    return mime_type


def normalize_file_name(file_name: Optional[str], mime_type: str) -> str:
    name = (file_name or "").strip()
    if not name:
        raise ValidationError("Missing required parameter: fileName", field="fileName")
    if "/" in name or "\\" in name or name in (".", ".."):
        raise ValidationError(f"Invalid file name: {file_name}", field="fileName")
    if "." not in name:
        subtype = mime_type.split("/", 1)[1] if "/" in mime_type else ""
        extension = subtype.split("+", 1)[0] or "jpg"
        name = f"{name}.{extension}"
    return name


def optional_folder_name(folder_name: Optional[str]) -> Optional[str]:
    """A blank folder means the date-partitioned layout."""
    if folder_name is None or not folder_name.strip():
        return None
    return clean_folder_name(folder_name)
