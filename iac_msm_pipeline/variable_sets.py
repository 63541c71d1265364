"""
================================================================================
VARIABLE SETS - Centralized Definitions for All Analysis Columns
================================================================================
Indwelling Arterial Catheter (IAC) and 28-Day Mortality
MIMIC ICU cohort, one row per patient ICU stay

This module centralizes the column schema used in the analysis.
Every recode, projection and model formula must reference these definitions --
no scattered hard-coded column lists elsewhere in the codebase.

Categorical levels are listed in model order: the FIRST level of each
categorical variable is the reference level of its treatment coding.
================================================================================
"""

import pandas as pd

# ============================================================================
# EXPOSURE / OUTCOME
# ============================================================================

EXPOSURE = {
    'name': 'aline_flg',
    'kind': 'binary',
    'levels': (0, 1),
    'description': 'Indwelling arterial catheter placed during the ICU stay',
}

OUTCOME = {
    'name': 'day_28_flg',
    'kind': 'binary',
    'levels': (0, 1),
    'description': 'Death within 28 days of ICU admission',
}

# ============================================================================
# CONTINUOUS COVARIATES
# ============================================================================

DEMOGRAPHICS = (
    {'name': 'age', 'kind': 'continuous', 'description': 'Age at ICU admission (years)'},
    {'name': 'weight_first', 'kind': 'continuous', 'description': 'First recorded weight (kg)'},
)

SEVERITY = (
    {'name': 'sofa_first', 'kind': 'continuous', 'description': 'First-day SOFA score'},
)

VITAL_SIGNS = (
    {'name': 'map_1st', 'kind': 'continuous', 'description': 'First mean arterial pressure (mmHg)'},
    {'name': 'hr_1st', 'kind': 'continuous', 'description': 'First heart rate (bpm)'},
    {'name': 'temp_1st', 'kind': 'continuous', 'description': 'First temperature (F)'},
    {'name': 'spo2_1st', 'kind': 'continuous', 'description': 'First SpO2 (%)'},
)

LAB_VALUES = (
    {'name': 'wbc_first', 'kind': 'continuous', 'description': 'First white cell count'},
    {'name': 'hgb_first', 'kind': 'continuous', 'description': 'First hemoglobin'},
    {'name': 'platelet_first', 'kind': 'continuous', 'description': 'First platelet count'},
    {'name': 'sodium_first', 'kind': 'continuous', 'description': 'First sodium'},
    {'name': 'potassium_first', 'kind': 'continuous', 'description': 'First potassium'},
    {'name': 'tco2_first', 'kind': 'continuous', 'description': 'First total CO2'},
    {'name': 'chloride_first', 'kind': 'continuous', 'description': 'First chloride'},
    {'name': 'bun_first', 'kind': 'continuous', 'description': 'First blood urea nitrogen'},
    {'name': 'creatinine_first', 'kind': 'continuous', 'description': 'First creatinine'},
)

ADMISSION_TIME_CONTINUOUS = (
    {'name': 'hour_icu_intime', 'kind': 'continuous', 'description': 'Hour of day of ICU admission (0-23)'},
)

# ============================================================================
# CATEGORICAL COVARIATES
# ============================================================================

_FLAG_LEVELS = (0, 1)

GENDER = (
    {'name': 'gender_num', 'kind': 'categorical', 'levels': _FLAG_LEVELS,
     'description': 'Gender (0 = female, 1 = male)'},
)

COMORBIDITY_FLAGS = tuple(
    {'name': name, 'kind': 'categorical', 'levels': _FLAG_LEVELS, 'description': description}
    for name, description in (
        ('chf_flg', 'Congestive heart failure'),
        ('afib_flg', 'Atrial fibrillation'),
        ('renal_flg', 'Chronic renal disease'),
        ('liver_flg', 'Liver disease'),
        ('copd_flg', 'Chronic obstructive pulmonary disease'),
        ('cad_flg', 'Coronary artery disease'),
        ('stroke_flg', 'Stroke'),
        ('mal_flg', 'Malignancy'),
        ('resp_flg', 'Respiratory failure / other respiratory disease'),
    )
)

ADMISSION_TIME_CATEGORICAL = (
    {'name': 'day_icu_intime_num', 'kind': 'categorical', 'levels': (1, 2, 3, 4, 5, 6, 7),
     'description': 'Day of week of ICU admission (1 = Monday ... 7 = Sunday)'},
)

# ============================================================================
# DERIVED COLUMNS
# ============================================================================

SERVICE_UNIT = {
    'name': 'service_unit',
    'kind': 'raw',
    'description': 'Admitting service unit; consumed to derive surgical_service',
    'surgical_value': 'SURG',
}

SURGICAL_SERVICE = {
    'name': 'surgical_service',
    'kind': 'categorical',
    'levels': (False, True),
    'description': 'Admitted under the surgical service (service_unit == "SURG")',
    'derived_from': SERVICE_UNIT['name'],
}

# Model order of the propensity covariates.
COVARIATES = (
    DEMOGRAPHICS
    + GENDER
    + SEVERITY
    + (SURGICAL_SERVICE,)
    + COMORBIDITY_FLAGS
    + VITAL_SIGNS
    + LAB_VALUES
    + ADMISSION_TIME_CATEGORICAL
    + ADMISSION_TIME_CONTINUOUS
)

DERIVED_COLUMNS = (SURGICAL_SERVICE,)


def covariate_names():
    return [c['name'] for c in COVARIATES]


def continuous_covariates():
    return [c['name'] for c in COVARIATES if c['kind'] == 'continuous']


def categorical_covariates():
    return [c['name'] for c in COVARIATES if c['kind'] == 'categorical']


def analysis_columns():
    """Columns kept by the covariate preparer, in output order."""
    return [EXPOSURE['name'], *covariate_names(), OUTCOME['name']]


def categorical_levels():
    """Mapping of every categorical/binary analysis column to its ordered levels."""
    levels = {c['name']: tuple(c['levels']) for c in COVARIATES if c['kind'] == 'categorical'}
    levels[EXPOSURE['name']] = tuple(EXPOSURE['levels'])
    levels[OUTCOME['name']] = tuple(OUTCOME['levels'])
    return levels


def required_raw_columns():
    """Columns the input CSV must carry before any derivation."""
    derived = {c['name'] for c in DERIVED_COLUMNS}
    raw = [EXPOSURE['name'], OUTCOME['name'], SERVICE_UNIT['name']]
    raw.extend(name for name in covariate_names() if name not in derived)
    return raw


# ============================================================================
# INVENTORY
# ============================================================================

def get_variable_inventory():
    """Return the schema as a DataFrame, one row per analysis column."""
    rows = []
    for role, entries in (
        ('exposure', (EXPOSURE,)),
        ('covariate', COVARIATES),
        ('outcome', (OUTCOME,)),
    ):
        for entry in entries:
            levels = entry.get('levels')
            rows.append({
                'name': entry['name'],
                'role': role,
                'kind': entry['kind'],
                'levels': ', '.join(str(x) for x in levels) if levels else '',
                'reference_level': str(levels[0]) if levels else '',
                'derived_from': entry.get('derived_from', ''),
                'description': entry['description'],
            })
    return pd.DataFrame(rows)
