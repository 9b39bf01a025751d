"""Archive downloader with progress tracking and checksum verification.

Used for prebuilt dependency binaries: streams the archive with requests,
shows a tqdm progress bar, verifies a SHA256 checksum, and extracts into a
staging directory.
"""

import hashlib
import tarfile
import zipfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from tqdm import tqdm

from cxbuild.packages.git import FetchFailure


class DownloadError(FetchFailure):
    """Raised when download fails."""

    def __init__(self, url: str, message: str):
        super().__init__(url, message)


class ChecksumError(DownloadError):
    """Raised when checksum verification fails."""

    pass


class ExtractionError(DownloadError):
    """Raised when archive extraction fails."""

    pass


class PackageDownloader:
    """Downloads and extracts archives with progress tracking."""

    def __init__(self, chunk_size: int = 8192, timeout: int = 30):
        """Initialize downloader.

        Args:
            chunk_size: Size of chunks for downloading and hashing
            timeout: Socket timeout for the HTTP request, in seconds
        """
        self.chunk_size = chunk_size
        self.timeout = timeout

    def download(
        self,
        url: str,
        dest_path: Path,
        checksum: Optional[str] = None,
        show_progress: bool = True,
    ) -> str:
        """Download a file from a URL.

        Args:
            url: URL to download from
            dest_path: Destination file path
            checksum: Optional SHA256 checksum for verification
            show_progress: Whether to show progress bar

        Returns:
            SHA256 of the downloaded file

        Raises:
            DownloadError: If download fails
            ChecksumError: If checksum verification fails
        """
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        # Use temporary file during download
        temp_file = dest_path.with_suffix(dest_path.suffix + ".tmp")
        sha256 = hashlib.sha256()

        try:
            response = requests.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()

            total_size = int(response.headers.get("content-length", 0))

            progress_bar = None
            if show_progress and total_size > 0:
                filename = Path(urlparse(url).path).name
                progress_bar = tqdm(
                    total=total_size,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc=f"Downloading {filename}",
                )

            try:
                with open(temp_file, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if chunk:
                            f.write(chunk)
                            sha256.update(chunk)
                            if progress_bar:
                                progress_bar.update(len(chunk))
            finally:
                if progress_bar:
                    progress_bar.close()

            actual_checksum = sha256.hexdigest()
            if checksum and actual_checksum.lower() != checksum.lower():
                temp_file.unlink()
                raise ChecksumError(
                    url,
                    f"checksum mismatch\nExpected: {checksum}\nGot: {actual_checksum}",
                )

            temp_file.replace(dest_path)
            return actual_checksum

        except requests.RequestException as e:
            if temp_file.exists():
                temp_file.unlink()
            raise DownloadError(url, f"download failed: {e}")

        except BaseException:
            if temp_file.exists():
                temp_file.unlink()
            raise

    def extract_archive(self, archive_path: Path, dest_dir: Path, show_progress: bool = True) -> Path:
        """Extract a .zip or .tar.{gz,bz2,xz} archive into ``dest_dir``.

        Raises:
            ExtractionError: If extraction fails or a member escapes dest_dir
        """
        archive_path = Path(archive_path)
        dest_dir = Path(dest_dir)

        if not archive_path.exists():
            raise ExtractionError(str(archive_path), "archive not found")

        dest_dir.mkdir(parents=True, exist_ok=True)

        if show_progress:
            print(f"Extracting {archive_path.name}...")

        try:
            if archive_path.suffix == ".zip":
                self._extract_zip(archive_path, dest_dir)
            elif archive_path.name.endswith((".tar.gz", ".tgz", ".tar.bz2", ".tar.xz")):
                self._extract_tar(archive_path, dest_dir)
            else:
                raise ExtractionError(str(archive_path), f"unsupported archive format: {archive_path.suffix}")
        except ExtractionError:
            raise
        except (OSError, zipfile.BadZipFile, tarfile.TarError) as e:
            raise ExtractionError(str(archive_path), f"failed to extract: {e}")

        return dest_dir

    @staticmethod
    def _check_member(dest_dir: Path, member_name: str, archive_path: Path) -> None:
        target = (dest_dir / member_name).resolve()
        if not target.is_relative_to(dest_dir.resolve()):
            raise ExtractionError(str(archive_path), f"member escapes destination: {member_name}")

    def _extract_tar(self, archive_path: Path, dest_dir: Path) -> None:
        with tarfile.open(archive_path, "r:*") as tar:
            for member in tar.getmembers():
                self._check_member(dest_dir, member.name, archive_path)
            tar.extractall(dest_dir)

    def _extract_zip(self, archive_path: Path, dest_dir: Path) -> None:
        with zipfile.ZipFile(archive_path, "r") as zip_file:
            for name in zip_file.namelist():
                self._check_member(dest_dir, name, archive_path)
            zip_file.extractall(dest_dir)

    def download_and_extract(
        self,
        url: str,
        cache_dir: Path,
        extract_dir: Path,
        checksum: Optional[str] = None,
        show_progress: bool = True,
    ) -> str:
        """Download (unless already cached) and extract an archive.

        Returns:
            SHA256 of the archive
        """
        filename = Path(urlparse(url).path).name
        archive_path = cache_dir / filename

        if archive_path.exists():
            actual = self.sha256_file(archive_path)
            if checksum and actual.lower() != checksum.lower():
                archive_path.unlink()
                actual = self.download(url, archive_path, checksum, show_progress)
            elif show_progress:
                print(f"Using cached {filename}")
        else:
            actual = self.download(url, archive_path, checksum, show_progress)

        self.extract_archive(archive_path, extract_dir, show_progress)
        return actual

    def sha256_file(self, file_path: Path) -> str:
        sha256 = hashlib.sha256()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                sha256.update(chunk)
        return sha256.hexdigest()
