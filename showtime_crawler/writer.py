"""
JSON output.

One file per cinema in the output directory. The crawler meta info gets the
framework version added so every file states what produced it.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any
from typing import Callable
from typing import Dict
from typing import Optional
from typing import Union

from showtime_crawler import __version__
from showtime_crawler.context import Context
from showtime_crawler.models import CrawlOutput
from showtime_crawler.utils import get_main_filename_base

logger = logging.getLogger(__name__)

FRAMEWORK_KEY = "showtime-crawler"

FileNameBuilder = Callable[[Dict[str, Any], Context], str]


class JsonFileWriter:
    """
    Saves output documents as pretty printed JSON files.

    Args:
        out_dir: Directory to write into, created on first save
        file_name_builder: Optional callable building the file name from the
            document and the context; the name is always lower-cased
    """

    def __init__(self, out_dir: Union[str, Path] = "output", file_name_builder: Optional[FileNameBuilder] = None) -> None:
        self.out_dir = Path(out_dir)
        self.file_name_builder = file_name_builder

    def ensure_out_dir(self) -> None:
        self.out_dir.mkdir(parents=True, exist_ok=True)

    def set_crawler_metainfo(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        crawler = dict(data.pop("crawler", None) or {})
        crawler["id"] = crawler.get("id") or get_main_filename_base()
        crawler[FRAMEWORK_KEY] = {"version": __version__}
        return {"crawler": crawler, **data}

    def build_filename(self, data: Dict[str, Any], context: Context) -> str:
        return f"{data['crawler']['id']}.json"

    async def save_file(self, data: Union[CrawlOutput, Dict[str, Any]], context: Context) -> Path:
        """
        Save ``data`` as JSON.

        Returns:
            Path of the written file
        """
        with context.callstack_frame("JsonFileWriter.save_file"):
            self.ensure_out_dir()
            if isinstance(data, CrawlOutput):
                data = data.to_json_dict()
            data = self.set_crawler_metainfo(data)
            builder = self.file_name_builder or self.build_filename
            file_name = builder(data, context).lower()
            file_path = self.out_dir / file_name
            logger.info(f"Saving file: {file_path}")
            content = json.dumps(data, indent=2, ensure_ascii=False)
            await asyncio.to_thread(file_path.write_text, content, encoding="utf-8")
            return file_path
