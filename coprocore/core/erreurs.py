"""
Taxonomie des erreurs CoproCore.

- ErreurChargement : accès aux données impossible (base, table, configuration)
- ErreurValidation : un enregistrement viole une règle de champ
- ProprietaireIntrouvable : référence à un propriétaire absent (fatal pour le décompte)
- AttributionAmbigueWarning : versement correspondant à plusieurs propriétaires
- PreconditionEchouee : précondition métier non remplie (confirmation de clôture)
- TransitionInterdite : changement de statut d'exercice refusé
"""


class ErreurChargement(Exception):
    """Les données nécessaires au calcul n'ont pas pu être chargées."""


class ErreurValidation(ValueError):
    """
    Erreur de validation portant sur un champ précis.

    Args:
        champ: Nom du champ en erreur
        raison: Description lisible du problème
    """

    def __init__(self, champ: str, raison: str):
        self.champ = champ
        self.raison = raison
        super().__init__(f"❌ {champ}: {raison}")


class ProprietaireIntrouvable(ErreurValidation):
    """Un propriétaire référencé n'existe pas dans la liste de l'immeuble."""

    def __init__(self, identifiants):
        self.identifiants = sorted(str(i) for i in identifiants)
        super().__init__(
            "proprietaire_id",
            f"propriétaire(s) introuvable(s) : {', '.join(self.identifiants)}"
        )


class AttributionAmbigueWarning(UserWarning):
    """Un versement correspond au nom de plusieurs propriétaires."""


class PreconditionEchouee(Exception):
    """Une précondition métier (clôture, statut d'exercice) n'est pas remplie."""


class TransitionInterdite(PreconditionEchouee):
    """Changement de statut d'exercice non autorisé (déjà clôturé, archivé, existant)."""
