from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .config import SUPPORTED_EXTS
from .errors import PhotoSourceError
from .models import Photo
from .utils import utc_now

logger = logging.getLogger(__name__)


class PhotoSource(ABC):
    """Where candidate photos come from."""

    @abstractmethod
    def list_candidates(self, exclude_ids: set[str]) -> list[Photo]:
        """Photos whose ID is not in ``exclude_ids``, newest first.

        Image bytes are loaded only for the photos returned.
        Raises PhotoSourceError when the source cannot be enumerated at all.
        """

    @property
    def description(self) -> str:
        return type(self).__name__


class FolderPhotoSource(PhotoSource):
    """A directory of image files standing in for a photo library.

    With an album name, only ``root/<album>`` is scanned. Without one the
    whole tree under ``root`` is. IDs are root-relative POSIX paths so they
    stay stable when the library folder moves.
    """

    def __init__(self, root: str | Path, album: str = "", supported_exts: Iterable[str] = SUPPORTED_EXTS):
        self.root = Path(root).expanduser()
        self.album = album.strip()
        self.supported_exts = tuple(ext.lower() for ext in supported_exts)

    @property
    def description(self) -> str:
        return f'album "{self.album}"' if self.album else f"folder {self.root}"

    def _scan_dir(self) -> Path:
        target = self.root / self.album if self.album else self.root
        if not target.is_dir():
            if self.album:
                raise PhotoSourceError(f"Album '{self.album}' not found under {self.root}")
            raise PhotoSourceError(f"Photo library folder not found: {self.root}")
        return target

    def list_candidates(self, exclude_ids: set[str]) -> list[Photo]:
        target = self._scan_dir()
        found: list[tuple[float, str, Path]] = []
        try:
            for p in sorted(target.rglob("*")):
                if not p.is_file() or p.suffix.lower() not in self.supported_exts:
                    continue
                asset_id = p.relative_to(self.root).as_posix()
                found.append((p.stat().st_mtime, asset_id, p))
        except OSError as exc:
            raise PhotoSourceError(f"Failed to list {target}: {exc}") from exc

        found.sort(key=lambda item: (-item[0], item[1]))
        new_items = [item for item in found if item[1] not in exclude_ids]
        logger.info(f"{self.description}: {len(found)} total, {len(new_items)} new")

        photos: list[Photo] = []
        for mtime, asset_id, p in new_items:
            try:
                data = p.read_bytes()
            except OSError as exc:
                logger.warning(f"Skipping unreadable photo {asset_id}: {exc}")
                continue
            photos.append(Photo(asset_id, datetime.fromtimestamp(mtime, timezone.utc), data))
        return photos


class PhotosLibrarySource(PhotoSource):
    """The macOS Photos library, optionally scoped to one regular album."""

    def __init__(self, album: str = ""):
        self.album = album.strip()

    @property
    def description(self) -> str:
        return f'album "{self.album}"' if self.album else "Photos Library"

    @staticmethod
    def _photos() -> Any:
        try:
            import Photos
        except ImportError as exc:
            raise PhotoSourceError(
                "Photos framework bindings are unavailable (install pyobjc-framework-Photos on macOS)"
            ) from exc
        return Photos

    @classmethod
    def authorization_status(cls) -> int:
        Photos = cls._photos()
        return int(Photos.PHPhotoLibrary.authorizationStatusForAccessLevel_(Photos.PHAccessLevelReadWrite))

    @classmethod
    def is_authorized(cls) -> bool:
        Photos = cls._photos()
        return cls.authorization_status() in (
            Photos.PHAuthorizationStatusAuthorized,
            Photos.PHAuthorizationStatusLimited,
        )

    def _find_album(self, Photos: Any) -> Any:
        collections = Photos.PHAssetCollection.fetchAssetCollectionsWithType_subtype_options_(
            Photos.PHAssetCollectionTypeAlbum,
            Photos.PHAssetCollectionSubtypeAlbumRegular,
            None,
        )
        for i in range(collections.count()):
            collection = collections.objectAtIndex_(i)
            if collection.localizedTitle() == self.album:
                return collection
        return None

    def _fetch_assets(self, Photos: Any) -> list[Any]:
        from Foundation import NSPredicate, NSSortDescriptor

        options = Photos.PHFetchOptions.alloc().init()
        options.setPredicate_(NSPredicate.predicateWithFormat_("mediaType == %d", Photos.PHAssetMediaTypeImage))
        options.setSortDescriptors_([NSSortDescriptor.sortDescriptorWithKey_ascending_("creationDate", False)])

        if self.album:
            album = self._find_album(Photos)
            if album is None:
                raise PhotoSourceError(
                    f"Album '{self.album}' not found in Photos. Create it in the Photos app first, "
                    "then add photos you want to capture."
                )
            result = Photos.PHAsset.fetchAssetsInAssetCollection_options_(album, options)
        else:
            result = Photos.PHAsset.fetchAssetsWithOptions_(options)
        return [result.objectAtIndex_(i) for i in range(result.count())]

    def _load_image_data(self, Photos: Any, asset: Any) -> bytes | None:
        options = Photos.PHImageRequestOptions.alloc().init()
        options.setDeliveryMode_(Photos.PHImageRequestOptionsDeliveryModeHighQualityFormat)
        options.setNetworkAccessAllowed_(True)
        options.setSynchronous_(True)

        loaded: list[bytes] = []

        def handler(data, _uti, _orientation, info):
            error = info.get(Photos.PHImageErrorKey) if info else None
            if error is not None:
                logger.warning(f"Image request failed for {asset.localIdentifier()}: {error}")
            elif data is not None:
                loaded.append(bytes(data))

        Photos.PHImageManager.defaultManager().requestImageDataAndOrientationForAsset_options_resultHandler_(
            asset, options, handler
        )
        return loaded[0] if loaded else None

    def list_candidates(self, exclude_ids: set[str]) -> list[Photo]:
        Photos = self._photos()
        if not self.is_authorized():
            raise PhotoSourceError(f"Photo library not authorized (status: {self.authorization_status()})")

        assets = self._fetch_assets(Photos)
        new_assets = [a for a in assets if str(a.localIdentifier()) not in exclude_ids]
        logger.info(f"{self.description}: {len(assets)} total, {len(new_assets)} new")

        photos: list[Photo] = []
        for asset in new_assets:
            data = self._load_image_data(Photos, asset)
            if data is None:
                continue
            created = asset.creationDate()
            creation_time = (
                datetime.fromtimestamp(created.timeIntervalSince1970(), timezone.utc) if created else utc_now()
            )
            photos.append(Photo(str(asset.localIdentifier()), creation_time, data))
        return photos
