"""
Interaction Service
===================
Static drug-interaction lookup used to gate medication creation.

The reference table is immutable and indexed once at import time by the
unordered, lower-cased pair of drug names.
"""

from collections import namedtuple
from typing import Dict, Iterable, List

Interaction = namedtuple('Interaction', ['drugs', 'severity', 'description', 'recommendation'])

INTERACTION_SOURCE = 'MediSafe Database'

INTERACTIONS = (
    # Diabetes
    Interaction(
        ('Metformin', 'Prednisone'), 'high',
        'Prednisone can significantly increase blood sugar levels, reducing the effect of Metformin.',
        'Monitor blood sugar closely. Dosage adjustment may be needed.'
    ),
    Interaction(
        ('Metformin', 'Furosemide'), 'medium',
        'Furosemide may increase blood levels of Metformin, increasing risk of lactic acidosis.',
        'Monitor for signs of lactic acidosis.'
    ),
    Interaction(
        ('Insulin', 'Aspirin'), 'medium',
        'Large doses of Aspirin may increase the hypoglycemic effect of Insulin.',
        'Monitor blood glucose.'
    ),

    # Blood pressure / heart
    Interaction(
        ('Lisinopril', 'Ibuprofen'), 'medium',
        'NSAIDs like Ibuprofen may diminish the antihypertensive effect of Lisinopril and damage kidneys.',
        'Avoid chronic use. Monitor blood pressure and kidney function.'
    ),
    Interaction(
        ('Lisinopril', 'Potassium'), 'high',
        'Taking Potassium supplements with Lisinopril can lead to dangerous hyperkalemia.',
        'Avoid potassium supplements unless prescribed.'
    ),
    Interaction(
        ('Atorvastatin', 'Clarithromycin'), 'high',
        'Clarithromycin increases Atorvastatin levels, raising risk of muscle damage.',
        'Avoid combination or temporarily stop Atorvastatin.'
    ),

    # Painkillers
    Interaction(
        ('Aspirin', 'Ibuprofen'), 'medium',
        'Ibuprofen may interfere with the anti-platelet effect of low-dose Aspirin.',
        'Take Aspirin at least 30 mins before or 8 hours after Ibuprofen.'
    ),
    Interaction(
        ('Aspirin', 'Warfarin'), 'critical',
        'Significantly increased risk of bleeding.',
        'Avoid unless strictly monitored by specialist.'
    ),
)


def _pair_key(first: str, second: str) -> frozenset:
    return frozenset((first.strip().lower(), second.strip().lower()))


_INDEX: Dict[frozenset, Interaction] = {
    _pair_key(*interaction.drugs): interaction for interaction in INTERACTIONS
}


def _drug_name(medication) -> str:
    if isinstance(medication, dict):
        return medication.get('name') or ''
    return getattr(medication, 'name', None) or ''


def check_interactions(new_drug_name: str, existing_medications: Iterable) -> List[Dict]:
    """
    Find known interactions between a new drug and the user's current drugs.

    Args:
        new_drug_name: Name of the drug being added
        existing_medications: Medication objects or {"name": ...} dicts

    Returns:
        list[dict]: One entry per interacting existing drug (empty if none)
    """
    if not new_drug_name:
        return []

    detected = []
    for existing in existing_medications:
        existing_name = _drug_name(existing)
        if not existing_name:
            continue

        match = _INDEX.get(_pair_key(new_drug_name, existing_name))
        if match is None:
            continue

        detected.append({
            'with_medication': existing_name,
            'severity': match.severity,
            'description': match.description,
            'recommendation': match.recommendation,
            'confirmed': True,
            'source': INTERACTION_SOURCE
        })

    return detected
