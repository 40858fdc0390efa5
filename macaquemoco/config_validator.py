"""
Configuration validators for the motion-correction workflow.

Checks that the keys each workflow reads are present before execution.
"""

import logging
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


class ConfigValidator:
    """Base configuration validator."""

    REQUIRED_KEYS: List[str] = []
    OPTIONAL_KEYS: List[str] = []
    SECTION = ''

    @staticmethod
    def check_required_keys(
        config: Dict,
        required_keys: List[str],
        section: str = ""
    ) -> Tuple[bool, List[str]]:
        """
        Check if required keys exist in config.

        Parameters
        ----------
        config : dict
            Configuration dictionary
        required_keys : list
            List of required key paths (e.g., 'motion_correction.quality')
        section : str
            Section name for logging

        Returns
        -------
        Tuple[bool, List[str]]
            (is_valid, missing_keys)
        """
        missing_keys = []

        for key_path in required_keys:
            current = config
            for key in key_path.split('.'):
                if not isinstance(current, dict) or key not in current:
                    missing_keys.append(key_path)
                    break
                current = current[key]

        return len(missing_keys) == 0, missing_keys

    @classmethod
    def validate(cls, config: Dict) -> Tuple[bool, List[str], List[str]]:
        """
        Validate one workflow's configuration.

        Returns
        -------
        Tuple[bool, List[str], List[str]]
            (is_valid, missing_required, missing_optional)
        """
        logger.info(f"Validating {cls.SECTION} configuration...")

        is_valid, missing_required = cls.check_required_keys(
            config, cls.REQUIRED_KEYS, cls.SECTION
        )
        _, missing_optional = cls.check_required_keys(
            config, cls.OPTIONAL_KEYS, cls.SECTION
        )

        if is_valid:
            logger.info(f"  ✓ {cls.SECTION} config valid")
        else:
            logger.error(f"  ✗ {cls.SECTION} config invalid")
            for key in missing_required:
                logger.error(f"    Missing required: {key}")

        if missing_optional:
            logger.warning("  ⚠ Missing optional parameters (will use defaults):")
            for key in missing_optional:
                logger.warning(f"    {key}")

        return is_valid, missing_required, missing_optional


class MotionCorrectionConfigValidator(ConfigValidator):
    """Validator for slice-wise motion-distortion correction."""

    SECTION = 'motion_correction'

    REQUIRED_KEYS = [
        'motion_correction.quality',
        'motion_correction.check_registration',
        'motion_correction.restrict_head',
    ]

    OPTIONAL_KEYS = [
        'motion_correction.perfect_threshold',
        'motion_correction.store_linear',
        'motion_correction.store_warp',
        'motion_correction.mask_zeros',
        'motion_correction.init_from_previous',
        'motion_correction.interleave',
        'motion_correction.bias_correct',
        'motion_correction.reference.liberal_fraction',
        'motion_correction.reference.strict_fraction',
        'motion_correction.brain_extraction.method',
        'motion_correction.reassembly.merge_chunk_size',
        'motion_correction.reassembly.clip_ringing',
        'motion_correction.components.n_components',
        'motion_correction.quality_report.outlier_sd',
    ]


class QualityReportConfigValidator(ConfigValidator):
    """Validator for the standalone quality report."""

    SECTION = 'quality_report'

    REQUIRED_KEYS = []

    OPTIONAL_KEYS = [
        'motion_correction.quality_report.outlier_sd',
        'suffixes.aligned',
        'suffixes.brain_mask',
        'suffixes.detrend',
        'suffixes.mean',
    ]


def validate_all_workflows(config: Dict) -> Dict[str, Tuple[bool, List[str], List[str]]]:
    """
    Validate configuration for all workflows.

    Parameters
    ----------
    config : dict
        Configuration dictionary

    Returns
    -------
    dict
        Dictionary mapping workflow name to (is_valid, missing_required, missing_optional)

    Raises
    ------
    ConfigValidationError
        If any workflow is missing required keys
    """
    logger.info("=" * 70)
    logger.info("VALIDATING CONFIGURATION")
    logger.info("=" * 70)

    validators = {
        'motion_correction': MotionCorrectionConfigValidator,
        'quality_report': QualityReportConfigValidator,
    }

    results = {}
    for workflow, validator_class in validators.items():
        results[workflow] = validator_class.validate(config)

    invalid = {w: r[1] for w, r in results.items() if not r[0]}
    if invalid:
        raise ConfigValidationError(f"Missing required config keys: {invalid}")

    logger.info("All workflows validated successfully")
    return results
