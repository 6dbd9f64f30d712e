"""
Configuration Management for the starsolve engine

This module holds the tunable parameters of PSF fitting, aperture photometry,
star finding, star-list matching and plate solving as dataclasses, and a
manager that loads them from YAML, validates them and writes them back.
"""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .utils import ConfigurationError


# Hard bound on the number of matching attempts of one plate solve
MAX_MATCH_ATTEMPTS = 10


@dataclass
class PSFConfig:
    """Configuration for elliptical Gaussian PSF fitting."""
    max_iterations: int = 10
    xtol: float = 1e-4
    ftol: float = 1e-4
    # Below this |Sx - Sy| the rotation angle is not fitted
    round_star_threshold: float = 0.001
    median_filter_size: int = 3


@dataclass
class PhotometryConfig:
    """Configuration for aperture photometry around fitted stars."""
    inner_radius: float = 20.0
    outer_radius: float = 30.0
    aperture_padding: float = 0.5  # added to FWHM to get the aperture radius
    gain: float = 2.3  # e-/ADU
    min_sky_pixels: int = 5
    min_data: float = 0.0
    max_data: float = 65535.0
    sigma_clip_threshold: float = 3.0
    max_iterations: int = 5


@dataclass
class StarFinderConfig:
    """Configuration for star detection."""
    radius: int = 10
    sigma: float = 1.0  # detection threshold in background sigma
    smoothing_sigma: float = 1.0
    min_amplitude: float = 0.01
    max_sigma: float = 200.0
    min_roundness: float = 0.5
    min_separation: float = 1.0
    max_stars: int = 0  # 0 keeps every star
    fit_angle: bool = False
    max_workers: Optional[int] = None


@dataclass
class MatchConfig:
    """Configuration for triangle matching of two star lists."""
    triangle_radius: float = 0.002
    max_ratio: float = 0.9
    min_votes: int = 2
    match_radius: float = 5.0
    max_dist: float = 50.0
    percentile: float = 0.35
    nsigma: float = 10.0
    max_iterations: int = 3
    halt_sigma: float = 1.0
    start_pairs: int = 6
    required_pairs: int = 3
    recalc_rounds: int = 2
    inlier_radius: float = 3.0
    max_candidates: int = 150


@dataclass
class PlateSolverConfig:
    """Configuration for plate solving."""
    n_candidates: int = 60
    min_pairs: int = 6
    max_attempts: int = 3
    scale_tolerance: float = 0.2  # arcsec/px around the expected scale
    candidate_increment: int = 50
    max_trials: int = 20
    convergence_tolerance: float = 1e-8
    sanity_tolerance: float = 0.3
    max_catalog_stars: int = 2500
    transform_kind: str = 'affine'


class ConfigManager:
    """
    Manages configuration loading, validation, and access.

    Sections of the YAML file map one to one to the dataclasses of this
    module: ``psf``, ``photometry``, ``star_finder``, ``matching`` and
    ``plate_solver``. Missing keys fall back to the dataclass defaults.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the configuration manager.

        Parameters:
        -----------
        config_path : str, optional
            Path to the configuration file. If None, loads default configuration.
        """
        self.logger = logging.getLogger(__name__)
        self.config_path = config_path
        self.config = {}

        if config_path:
            self.load_config(config_path)
        else:
            self.load_default_config()

    def load_config(self, config_path: str) -> None:
        """
        Load configuration from a YAML file.

        Parameters:
        -----------
        config_path : str
            Path to the configuration file

        Raises:
        -------
        FileNotFoundError
            If the configuration file doesn't exist
        ConfigurationError
            If the YAML file is malformed or fails validation
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r') as file:
                raw_config = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing YAML file {config_path}: {e}")

        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Top level of {config_path} must be a mapping")

        self.config = self._parse_config(raw_config)
        self.validate_configuration()
        self.logger.info(f"Successfully loaded configuration from {config_path}")

    def load_default_config(self) -> None:
        """Load default configuration values."""
        self.config = {
            'psf': PSFConfig(),
            'photometry': PhotometryConfig(),
            'star_finder': StarFinderConfig(),
            'matching': MatchConfig(),
            'plate_solver': PlateSolverConfig(),
        }
        self.logger.debug("Loaded default configuration")

    def _parse_config(self, raw_config: Dict[str, Any]) -> Dict[str, Any]:
        sections = {
            'psf': PSFConfig,
            'photometry': PhotometryConfig,
            'star_finder': StarFinderConfig,
            'matching': MatchConfig,
            'plate_solver': PlateSolverConfig,
        }
        unknown = set(raw_config) - set(sections)
        if unknown:
            self.logger.warning(f"Ignoring unknown configuration sections: {sorted(unknown)}")

        return {
            name: self._parse_section(name, cls, raw_config.get(name) or {})
            for name, cls in sections.items()
        }

    def _parse_section(self, name: str, cls, values: Dict[str, Any]):
        """Build one dataclass section, rejecting keys it does not know."""
        if not isinstance(values, dict):
            raise ConfigurationError(f"Section '{name}' must be a mapping")

        known = cls.__dataclass_fields__
        unknown = [key for key in values if key not in known]
        if unknown:
            raise ConfigurationError(f"Unknown keys in section '{name}': {unknown}")

        return cls(**values)

    def get_psf_config(self) -> PSFConfig:
        """Get PSF fitting configuration."""
        return self.config['psf']

    def get_photometry_config(self) -> PhotometryConfig:
        """Get photometry configuration."""
        return self.config['photometry']

    def get_star_finder_config(self) -> StarFinderConfig:
        """Get star finder configuration."""
        return self.config['star_finder']

    def get_match_config(self) -> MatchConfig:
        """Get matching configuration."""
        return self.config['matching']

    def get_plate_solver_config(self) -> PlateSolverConfig:
        """Get plate solver configuration."""
        return self.config['plate_solver']

    def validate_configuration(self) -> bool:
        """
        Check the loaded values for consistency.

        Returns:
        --------
        bool
            True if configuration is valid

        Raises:
        -------
        ConfigurationError
            If configuration validation fails
        """
        errors = []

        psf = self.config['psf']
        if psf.max_iterations < 1:
            errors.append("psf.max_iterations must be at least 1")
        if psf.round_star_threshold < 0:
            errors.append("psf.round_star_threshold must not be negative")

        phot = self.config['photometry']
        if not 0 < phot.inner_radius < phot.outer_radius:
            errors.append("photometry radii must satisfy 0 < inner_radius < outer_radius")
        if phot.gain <= 0:
            errors.append("photometry.gain must be positive")

        finder = self.config['star_finder']
        if finder.radius < 2:
            errors.append("star_finder.radius must be at least 2")

        matching = self.config['matching']
        if matching.match_radius <= 0 or matching.triangle_radius <= 0:
            errors.append("matching radii must be positive")
        if matching.start_pairs < matching.required_pairs:
            errors.append("matching.start_pairs must not be below matching.required_pairs")

        solver = self.config['plate_solver']
        errors.extend(validate_plate_solver_config(solver))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(errors))

        self.logger.debug("Configuration validation passed")
        return True

    def save_config(self, output_path: str) -> None:
        """
        Save current configuration to a YAML file.

        Parameters:
        -----------
        output_path : str
            Path to save the configuration file
        """
        config_dict = {key: asdict(value) for key, value in self.config.items()}

        with open(output_path, 'w') as file:
            yaml.dump(config_dict, file, default_flow_style=False, indent=2)

        self.logger.info(f"Configuration saved to {output_path}")


def validate_plate_solver_config(config: PlateSolverConfig) -> list:
    """Return the list of problems found in a plate solver configuration."""
    errors = []
    if not 1 <= config.max_attempts <= MAX_MATCH_ATTEMPTS:
        errors.append(f"plate_solver.max_attempts must be between 1 and {MAX_MATCH_ATTEMPTS}")
    if config.min_pairs < 3:
        errors.append("plate_solver.min_pairs must be at least 3")
    if config.n_candidates < config.min_pairs:
        errors.append("plate_solver.n_candidates must not be below plate_solver.min_pairs")
    if config.transform_kind not in ('affine', 'homography'):
        errors.append(f"Unknown transform kind: {config.transform_kind}")
    if config.max_trials < 0:
        errors.append("plate_solver.max_trials must not be negative")
    return errors


def load_config(config_path: str) -> ConfigManager:
    """
    Convenience function to load and validate configuration.

    Parameters:
    -----------
    config_path : str
        Path to configuration file

    Returns:
    --------
    ConfigManager
        Loaded configuration manager
    """
    return ConfigManager(config_path)
