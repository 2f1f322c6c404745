"""Application branding (name and logo).

One ``Branding`` value per process. It is loaded at start-up and
reloaded every time the ``app_settings`` table reports a change.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from sas_financier.db import Database
from sas_financier.exceptions import StoreError, ValidationError
from sas_financier.logging import get_logger
from sas_financier.roles import RoleContext
from sas_financier.storage import IMAGE_EXTENSIONS, ObjectStore, file_extension

logger = get_logger(__name__)

APP_NAME_KEY = "app_name"
APP_LOGO_KEY = "app_logo_url"

MAX_APP_NAME = 80


@dataclass(frozen=True)
class Branding:
    app_name: str
    app_logo_url: Optional[str] = None


class AppSettings:
    def __init__(
        self,
        database: Database,
        default_app_name: str,
        objects: Optional[ObjectStore] = None,
    ) -> None:
        self.database = database
        self.objects = objects
        self.default = Branding(app_name=default_app_name)
        self._current = self.default
        database.notifier.subscribe("app_settings", self._on_change)

    @property
    def current(self) -> Branding:
        return self._current

    def _on_change(self, _table: str) -> None:
        self.reload()

    def reload(self) -> Branding:
        try:
            name = self.database.get_setting(APP_NAME_KEY).strip()
            logo = self.database.get_setting(APP_LOGO_KEY).strip()
        except StoreError:
            logger.error("Could not load app settings, keeping %r", self._current.app_name)
            return self._current
        self._current = Branding(app_name=name or self.default.app_name, app_logo_url=logo or None)
        return self._current

    def close(self) -> None:
        self.database.notifier.unsubscribe("app_settings", self._on_change)

    def update_name(self, actor: RoleContext, app_name: str) -> Branding:
        actor.require_admin()
        app_name = (app_name or "").strip()
        if not app_name:
            raise ValidationError("Le nom de l'application est obligatoire")
        if len(app_name) > MAX_APP_NAME:
            raise ValidationError(f"Nom trop long ({MAX_APP_NAME} caractères maximum)")
        self.database.set_setting(APP_NAME_KEY, app_name)
        return self._current

    def update_logo(self, actor: RoleContext, file_name: str, data: bytes) -> Branding:
        actor.require_admin()
        if self.objects is None:
            raise ValidationError("Stockage des logos indisponible")
        ext = file_extension(file_name, IMAGE_EXTENSIONS)
        path = f"app-logos/logo-{int(time.time() * 1000)}{ext}"
        self.objects.upload(path, data, overwrite=True)
        self._drop_logo(keep=path)
        self.database.set_setting(APP_LOGO_KEY, self.objects.get_public_url(path))
        return self._current

    def remove_logo(self, actor: RoleContext) -> Branding:
        actor.require_admin()
        self._drop_logo()
        self.database.set_setting(APP_LOGO_KEY, "")
        return self._current

    def _drop_logo(self, keep: Optional[str] = None) -> None:
        old = self._current.app_logo_url
        if self.objects is None or not old:
            return
        path = self.objects.path_from_url(old)
        if path and path != keep:
            self.objects.remove([path])
