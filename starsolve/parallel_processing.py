#!/usr/bin/env python3
"""
Parallel Processing Module for star fitting

Fits many independent pixel windows concurrently. Each window is fitted by
the same stateless PSFFitter, so a thread pool is enough: the heavy lifting
happens in numpy and scipy, which release the GIL.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from multiprocessing import cpu_count
from typing import List, Optional, Sequence, Union

import numpy as np

from .psf import FittedStar, PSFFitter
from .sampler import PixelWindow

logger = logging.getLogger(__name__)


class ParallelFitter:
    """Batch fitting of star windows on a thread pool."""

    def __init__(self, fitter: Optional[PSFFitter] = None,
                 max_workers: Optional[int] = None):
        """
        Initialize the batch fitter.

        Parameters:
        -----------
        fitter : PSFFitter, optional
            Fitter shared by the workers. If None, uses a default fitter.
        max_workers : int, optional
            Maximum number of worker threads
        """
        self.fitter = fitter or PSFFitter()
        self.max_workers = max_workers or max(1, cpu_count() - 1)

        logger.debug(f"Initialized ParallelFitter: {self.max_workers} threads")

    def _fit_one(self, window: PixelWindow, background: float, fit_angle: bool,
                 do_photometry: bool) -> Optional[FittedStar]:
        return self.fitter.fit_star(window, background, fit_angle, do_photometry)

    def fit_windows(self, windows: Sequence[PixelWindow],
                    backgrounds: Union[float, Sequence[float]],
                    fit_angle: bool = True,
                    do_photometry: bool = False) -> List[Optional[FittedStar]]:
        """
        Fit a batch of windows.

        Parameters:
        -----------
        windows : sequence of PixelWindow
            Windows to fit
        backgrounds : float or sequence of float
            One background estimate per window, or one for all
        fit_angle : bool, default=True
            Fit the rotation angle of elongated stars
        do_photometry : bool, default=False
            Run aperture photometry on each star

        Returns:
        --------
        list
            One entry per window in input order, None where the fit failed
        """
        if np.ndim(backgrounds) == 0:
            backgrounds = [float(backgrounds)] * len(windows)
        if len(backgrounds) != len(windows):
            raise ValueError(f"{len(backgrounds)} backgrounds given for {len(windows)} windows")
        if not windows:
            return []

        start_time = time.time()
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(self._fit_one, window, background, fit_angle, do_photometry)
                for window, background in zip(windows, backgrounds)
            ]
            results = [future.result() for future in futures]

        n_ok = sum(star is not None for star in results)
        elapsed_time = time.time() - start_time
        logger.info(f"Fitted {n_ok}/{len(windows)} windows in {elapsed_time:.2f} seconds")
        return results
