"""
filesystem.py
-------------
Description: The filesystem is the source of truth for which stages have completed. All probing goes through this
             small interface, so that it can be swapped for an in-memory fake.
"""

import os
import shutil
from typing import List


class FileSystem:
    def exists(self, path: str) -> bool:
        raise NotImplementedError()

    def is_dir(self, path: str) -> bool:
        raise NotImplementedError()

    def listdir(self, path: str) -> List[str]:
        raise NotImplementedError()

    def makedirs(self, path: str):
        raise NotImplementedError()

    def copy_file(self, source: str, destination: str):
        raise NotImplementedError()

    def is_nonempty(self, path: str) -> bool:
        """
        A folder is non-empty if it holds at least one entry, and a file is non-empty if it has any content.
        """
        if not self.exists(path):
            return False
        if self.is_dir(path):
            return len(self.listdir(path)) > 0
        return True


class LocalFileSystem(FileSystem):
    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def listdir(self, path: str) -> List[str]:
        if not os.path.isdir(path):
            return []
        return sorted(os.listdir(path))

    def makedirs(self, path: str):
        os.makedirs(path, exist_ok=True)

    def copy_file(self, source: str, destination: str):
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        shutil.copyfile(source, destination)

    def is_nonempty(self, path: str) -> bool:
        if os.path.isfile(path):
            return os.path.getsize(path) > 0
        return super().is_nonempty(path)
