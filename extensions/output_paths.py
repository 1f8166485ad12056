from __future__ import annotations

from pathlib import Path
from urllib.parse import urlparse

from doccrawler.utils import slugify

# Documents kept under the metadata directory, one JSON file per concern.
METADATA_FILES = {
    "progress": "progress.json",
    "image_load_failures": "imageLoadFailures.json",
    "url_mapping": "urlMapping.json",
    "article_titles": "articleTitles.json",
    "section_structure": "sectionStructure.json",
    "failed_links": "failed.json",
    "image_load_log": "imageLoadLog.json",
}


class OutputPaths:
    """
    Layout of a crawl run:

        {output_dir}/NNN-<slug>.pdf           one artifact per page
        {output_dir}/markdown/NNN-<slug>.md   markdown workflow
        {output_dir}/{metadata}/*.json        state + metadata documents
    """

    def __init__(self, output_dir: Path, metadata_dir_name: str = "metadata", markdown_dir_name: str = "markdown"):
        self.output_dir = Path(output_dir)
        self.metadata_dir = self.output_dir / metadata_dir_name
        self.markdown_dir = self.output_dir / markdown_dir_name

    def metadata_path(self, kind: str) -> Path:
        return self.metadata_dir / METADATA_FILES.get(kind, f"{kind}.json")

    def artifact_path(self, url: str, index: int, ext: str = "pdf") -> Path:
        parsed = urlparse(url)
        segments = [p for p in (parsed.path or "").split("/") if p]
        slug = slugify(segments[-1] if segments else (parsed.hostname or "index"), max_len=60)
        name = f"{int(index):03d}-{slug}.{ext.lstrip('.')}"
        base = self.markdown_dir if ext.lstrip(".") == "md" else self.output_dir
        return base / name

    def ensure_dirs(self) -> None:
        for d in (self.output_dir, self.metadata_dir):
            d.mkdir(parents=True, exist_ok=True)
