import logging
import os
from pathlib import Path

import tomlkit

from domain.models import TerrainSettings
from domain.toml_sections import flat_to_sectioned, sectioned_to_flat

logger = logging.getLogger(__name__)

APP_DIR_NAME = 'TerrainMesh'


def _user_profiles_dir() -> Path:
    """
    Determine profiles directory.

    1) If <project_root>/configs/profiles exists, use it (useful for run-from-repo setups).
    2) Otherwise, fall back to the user APPDATA directory: %APPDATA%/TerrainMesh/configs/profiles
       or ~/.config/TerrainMesh/configs/profiles when APPDATA is not set.
    """
    project_root = Path(__file__).resolve().parent.parent
    local_profiles = project_root / 'configs' / 'profiles'
    if local_profiles.exists():
        return local_profiles

    return (
        Path(os.getenv('APPDATA') or (Path.home() / '.config'))
        / APP_DIR_NAME
        / 'configs'
        / 'profiles'
    )


def ensure_profiles_dir() -> Path:
    profiles_dir = _user_profiles_dir()
    profiles_dir.mkdir(parents=True, exist_ok=True)
    return profiles_dir


def list_profiles() -> list[str]:
    """Список имён профилей без расширения."""
    folder = ensure_profiles_dir()
    return sorted(p.stem for p in folder.glob('*.toml') if p.is_file())


def profile_path(name: str) -> Path:
    """Путь к файлу профиля по имени."""
    return ensure_profiles_dir() / f'{name}.toml'


def _resolve(name_or_path: str) -> Path:
    p = Path(name_or_path)
    if p.suffix.lower() == '.toml' and p.exists():
        return p
    return profile_path(name_or_path)


def load_profile(name_or_path: str) -> TerrainSettings:
    """
    Загрузка и валидация профиля TOML -> TerrainSettings.

    Поддерживает как имя профиля (без .toml) из каталога profiles,
    так и абсолютный/относительный путь до TOML файла. Принимаются как
    секционные, так и плоские (старые) профили.
    """
    path = _resolve(name_or_path)
    if not path.exists():
        msg = f'Профиль не найден: {path}'
        raise FileNotFoundError(msg)
    text = path.read_text(encoding='utf-8')
    data = tomlkit.parse(text).unwrap()
    settings = TerrainSettings.model_validate(sectioned_to_flat(data))
    logger.info(
        'Profile %s loaded: topology=%s resolution=%d origin=(%.6f, %.6f)',
        path.name,
        settings.topology.value,
        settings.resolution,
        settings.origin_lat,
        settings.origin_lon,
    )
    return settings


def save_profile(name: str, settings: TerrainSettings, path: Path | None = None) -> Path:
    """Сохранение профиля в секционный TOML (без атомарности и бэкапов)."""
    path = path or profile_path(name)
    data = flat_to_sectioned(settings.model_dump(mode='json'))
    text = tomlkit.dumps(data)
    path.write_text(text, encoding='utf-8')
    logger.info('Profile saved: %s', path)
    return path


def delete_profile(name: str) -> None:
    """Удаление файла профиля, если он существует."""
    path = profile_path(name)
    if path.exists():
        path.unlink()
