"""
Module: bottlenecks.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    Post-processing of the corridor frequency surface.

    Key Tasks:
    1. Thresholding: keep cells whose crossing count lies in the top
       percentile of all crossed cells.
    2. Conflict Mask: of those, keep cells whose resistance value is at least
       `min_resistance` (high-use corridor on expensive terrain).
    3. Morphological Closing: merge nearby cells into cohesive bottleneck
       zones (gap tolerance in pixels).
    4. Statistics: per zone, total and average crossings, size and centre,
       ranked by average intensity.

Dependencies:
    - numpy, pandas, scipy.ndimage
    - rasterio (cell-centre coordinates)
"""

import numpy as np
import pandas as pd
import rasterio
from rasterio.transform import Affine
from scipy import ndimage

from .config import get_logger

log = get_logger(__name__)

BOTTLENECK_COLUMNS = ["Rank", "Easting", "Northing", "Average_Intensity",
                      "Total_Intensity", "Pixel_Count", "Cluster_ID"]


def bottleneck_mask(frequency, resistance, percentile=95.0, min_resistance=0.0):
    """
    High-traffic cells on high-resistance terrain.

    Args:
        frequency (np.ndarray): Corridor crossings per cell.
        resistance (np.ndarray): Resistance surface of the same shape.
        percentile (float): Traffic percentile (over crossed cells) to keep.
        min_resistance (float): Smallest resistance that counts as a barrier.

    Returns:
        tuple: (mask, traffic_threshold); threshold is None when nothing was crossed.
    """
    frequency = np.asarray(frequency, dtype=float)
    resistance = np.asarray(resistance, dtype=float)
    if frequency.shape != resistance.shape:
        raise ValueError(f"Shape mismatch: frequency {frequency.shape} vs resistance {resistance.shape}")
    if not 0 <= percentile <= 100:
        raise ValueError("percentile must be in [0, 100]")

    crossed = frequency[frequency > 0]
    if crossed.size == 0:
        return np.zeros(frequency.shape, dtype=bool), None

    traffic_thresh = float(np.percentile(crossed, percentile))
    # NaN resistance (outside the study area) never counts as a barrier
    with np.errstate(invalid="ignore"):
        mask = (frequency >= traffic_thresh) & (frequency > 0) & (resistance >= min_resistance)
    return mask, traffic_thresh


def extract_bottlenecks(frequency, resistance, percentile=95.0, min_resistance=0.0,
                        gap_tolerance=2, transform=None):
    """
    Clusters high-traffic, high-resistance cells into ranked bottleneck zones.

    Args:
        frequency (np.ndarray): Corridor crossings per cell (pixel_frequency).
        resistance (np.ndarray): Resistance surface of the same shape.
        percentile (float): Traffic percentile defining a 'corridor' cell.
        min_resistance (float): Smallest resistance defining a 'barrier' cell.
        gap_tolerance (int): Pixel radius used to merge nearby cells.
        transform (Affine, optional): Raster-to-map transform for zone centres.

    Returns:
        pd.DataFrame: One row per zone, ranked by Average_Intensity (descending).
    """
    frequency = np.asarray(frequency, dtype=float)
    transform = transform if transform is not None else Affine.identity()

    binary_mask, traffic_thresh = bottleneck_mask(frequency, resistance, percentile, min_resistance)
    if traffic_thresh is None:
        log.warning("Corridor frequency surface is empty; no bottlenecks.")
        return pd.DataFrame(columns=BOTTLENECK_COLUMNS)
    log.info(f"Bottleneck extraction -> traffic threshold (>= {traffic_thresh:.2f})")

    if gap_tolerance > 0:
        structure_size = gap_tolerance * 2 + 1
        # Padded so the erosion half of the closing does not eat cells at the raster edge
        padded = np.pad(binary_mask, structure_size)
        closed_mask = ndimage.binary_closing(padded, structure=np.ones((structure_size, structure_size)))
        closed_mask = closed_mask[structure_size:-structure_size, structure_size:-structure_size]
    else:
        closed_mask = binary_mask

    labeled_array, num_features = ndimage.label(closed_mask, structure=np.ones((3, 3)))
    log.info(f"Found {num_features} distinct bottleneck cluster(s).")

    cluster_list = []
    for i, slice_obj in enumerate(ndimage.find_objects(labeled_array)):
        label_id = i + 1
        cluster_mask = labeled_array[slice_obj] == label_id
        traffic_slice = frequency[slice_obj]

        total_intensity = float(np.sum(traffic_slice[cluster_mask]))
        pixel_count = int(np.sum(cluster_mask))
        avg_intensity = total_intensity / pixel_count if pixel_count > 0 else 0.0

        local_rows, local_cols = np.where(cluster_mask)
        r_center = np.mean(local_rows) + slice_obj[0].start
        c_center = np.mean(local_cols) + slice_obj[1].start
        real_x, real_y = rasterio.transform.xy(transform, r_center, c_center, offset="center")

        cluster_list.append({
            "Cluster_ID": label_id,
            "Easting": float(real_x),
            "Northing": float(real_y),
            "Average_Intensity": avg_intensity,
            "Total_Intensity": total_intensity,
            "Pixel_Count": pixel_count,
        })

    if not cluster_list:
        return pd.DataFrame(columns=BOTTLENECK_COLUMNS)

    # Narrow, busy zones rank above large diffuse ones
    df = pd.DataFrame(cluster_list).sort_values(by="Average_Intensity", ascending=False, kind="stable")
    df["Rank"] = range(1, len(df) + 1)
    return df[BOTTLENECK_COLUMNS].reset_index(drop=True)
