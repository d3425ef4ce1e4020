"""
Chargement de la configuration métier depuis config/classification.yaml.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

import yaml

from coprocore.core.erreurs import ErreurChargement

CONFIG_DIR = Path(__file__).parent.parent / "config"
CONFIG_FILE = CONFIG_DIR / "classification.yaml"


@lru_cache(maxsize=None)
def charger_configuration(chemin: Path = CONFIG_FILE) -> Dict[str, Any]:
    """
    Charge la configuration YAML (mots-clés, seuils, modèles de texte).

    Args:
        chemin: Fichier YAML à lire

    Returns:
        Dictionnaire de configuration

    Raises:
        ErreurChargement: Si le fichier est absent ou invalide
    """
    try:
        with open(chemin, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ErreurChargement(f"Configuration illisible {chemin}: {e}") from e

    if not isinstance(config, dict):
        raise ErreurChargement(f"Configuration vide ou mal formée : {chemin}")
    return config


def mots_cles_frais() -> tuple[str, ...]:
    return tuple(m.lower() for m in charger_configuration()["mots_cles_frais"])


def configurer_logging() -> None:
    """Configure le logging racine pour un processus (API, script)."""
    config = charger_configuration().get("logging", {})
    logging.basicConfig(
        level=config.get("niveau", "INFO"),
        format=config.get("format", "%(levelname)s %(name)s - %(message)s"),
    )
