"""
Density landscape plots: 2D kernel density of samples in a projection,
with an optional point overlay encoding color and size.
"""

import logging
from collections import namedtuple
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib import colormaps
from matplotlib.colors import LinearSegmentedColormap, is_color_like
from matplotlib.lines import Line2D
from scipy import stats

from .microbiome_stats import get_ordination
from .microbiome_utils import MicrobiomeDataset

logger = logging.getLogger(__name__)


# Used when both bandwidth components are zero
MIN_BANDWIDTH = 1e-3

Bandwidth = namedtuple('Bandwidth', ['x', 'y'])


class PointEncoding(Enum):
    """Which point attributes vary across rows."""

    NONE = 'none'
    COLOR = 'color'
    SIZE = 'size'
    BOTH = 'both'


@dataclass
class PlotStyle:
    """Rendering style for landscape plots"""

    theme: str = 'whitegrid'
    font_size: float = 20
    figsize: Tuple[float, float] = (10, 8)
    low_color: str = 'white'
    high_color: str = 'black'
    missing_color: str = 'darkgray'
    palette: str = 'tab10'
    continuous_cmap: str = 'viridis'
    size_range: Tuple[float, float] = (1, 6)
    point_scale: float = 3.0
    grid_size: int = 100


@dataclass
class DensitySurface:
    """Density evaluated on a regular grid; z[i, j] is the density at (x[i], y[j])"""

    x: np.ndarray
    y: np.ndarray
    z: np.ndarray

    @property
    def extent(self):
        return (self.x[0], self.x[-1], self.y[0], self.y[-1])


@dataclass
class RawProjection:
    """Input that is already a numeric table of coordinates"""

    table: pd.DataFrame

    def project(self):
        return self.table, None


@dataclass
class StructuredDataset:
    """Input dataset that must be ordinated before plotting

    The ordination is computed on the first projection and kept in
    `ordination` for later calls.
    """

    dataset: MicrobiomeDataset
    method: str = 'NMDS'
    distance: str = 'bray'
    ordination: Optional[pd.DataFrame] = None

    def project(self):
        if self.ordination is None:
            self.ordination = get_ordination(self.dataset, self.method, self.distance)
        axes = ['Comp.1', 'Comp.2']
        return self.ordination[axes], self.ordination.drop(columns=axes)


@dataclass
class LandscapePlot:
    """Description of a landscape plot, independent of the rendering backend"""

    data: pd.DataFrame
    xvar: str
    yvar: str
    bandwidth: Bandwidth
    surface: DensitySurface
    encoding: PointEncoding
    add_points: bool
    x_breaks: np.ndarray
    rounding: int
    title: Optional[str] = None
    legend: bool = False
    guide_title: str = 'color'
    x_labels: list = field(default_factory=list)

    @property
    def n_points(self):
        return len(self.data) if self.add_points else 0

    @property
    def color_categories(self):
        return list(pd.unique(self.data['color']))


def bandwidth(values):
    """
    Normal reference bandwidth of a sample, as in MASS::bandwidth.nrd.

    Missing values are ignored. Returns 0 for fewer than two values.
    """
    values = np.asarray(values, dtype=float)
    values = values[~np.isnan(values)]
    n = len(values)
    if n < 2:
        return 0.0

    q1, q3 = np.percentile(values, [25, 75])
    return 4 * 1.06 * min(np.std(values, ddof=1), (q3 - q1) / 1.34) * n ** (-0.2)


def landscape_bandwidth(x, y, adjust=1):
    """
    Bandwidth pair for the x and y coordinates, scaled by `adjust`.

    A zero component is replaced by the other component, or by
    MIN_BANDWIDTH when both are zero.
    """
    bw = adjust * np.array([bandwidth(x), bandwidth(y)])

    if (bw == 0).any():
        nonzero = bw[bw > 0]
        fallback = nonzero.min() if len(nonzero) > 0 else MIN_BANDWIDTH
        logger.warning(f"Zero bandwidths (possibly due to small number of observations). "
                       f"Using minimal bandwidth {fallback:g}")
        bw[bw == 0] = fallback

    return Bandwidth(float(bw[0]), float(bw[1]))


def kde2d(x, y, h, n=100, lims=None):
    """
    Bivariate Gaussian kernel density estimate on a regular grid.

    Follows MASS::kde2d: the kernel standard deviation in each direction is
    a quarter of the bandwidth.

    Parameters:
    -----------
    x, y : array-like
        Coordinates of the observations
    h : tuple
        Bandwidths for the x and y directions
    n : int
        Number of grid points in each direction
    lims : tuple, optional
        (xmin, xmax, ymin, ymax) of the grid; defaults to the data range

    Returns:
    --------
    DensitySurface
        Grid coordinates and density values
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if len(x) == 0:
        raise ValueError("No observations with both coordinates defined")

    hx, hy = np.asarray(h, dtype=float) / 4

    if lims is None:
        lims = (x.min(), x.max(), y.min(), y.max())
    xmin, xmax, ymin, ymax = lims

    # Degenerate extents get a grid one kernel width wide
    if xmax == xmin:
        xmin, xmax = xmin - hx, xmax + hx
    if ymax == ymin:
        ymin, ymax = ymin - hy, ymax + hy

    gx = np.linspace(xmin, xmax, n)
    gy = np.linspace(ymin, ymax, n)

    ax = stats.norm.pdf((gx[:, None] - x[None, :]) / hx)
    ay = stats.norm.pdf((gy[:, None] - y[None, :]) / hy)
    z = ax @ ay.T / (len(x) * hx * hy)

    return DensitySurface(gx, gy, z)


def drop_missing(table):
    """Drop rows with a missing x or y coordinate."""
    return table[table['x'].notna() & table['y'].notna()]


def point_encoding(table):
    varies_color = table['color'].nunique(dropna=False) > 1
    varies_size = table['size'].nunique(dropna=False) > 1

    if varies_color and varies_size:
        return PointEncoding.BOTH
    elif varies_color:
        return PointEncoding.COLOR
    elif varies_size:
        return PointEncoding.SIZE
    return PointEncoding.NONE


def _as_frame(x):
    if isinstance(x, pd.DataFrame):
        return x
    values = np.asarray(x)
    if values.ndim != 2:
        raise ValueError(f"Expected a two-dimensional table, got {values.ndim} dimension(s)")
    return pd.DataFrame(values, columns=[f'V{i + 1}' for i in range(values.shape[1])])


def _coordinates(x):
    """First two columns of the input as a numeric table."""
    df = _as_frame(x)

    if df.shape[1] < 2:
        raise ValueError(f"Need two columns to plot, got {df.shape[1]}")
    if df.shape[1] > 2:
        logger.warning("More than two dimensions in the data. Projection methods not "
                       "implemented for tables. Using the first two columns for visualization.")
        df = df.iloc[:, :2]

    for col in df.columns:
        if not pd.api.types.is_numeric_dtype(df[col]) or pd.api.types.is_bool_dtype(df[col]):
            raise ValueError(f"Column '{col}' is not numeric")

    return df


def _per_row(values, n_rows, what):
    """Broadcast a scalar to all rows, or check an explicit per-row array."""
    if values is None or isinstance(values, str) or np.ndim(values) == 0:
        return [values] * n_rows

    values = list(values)
    if len(values) != n_rows:
        raise ValueError(f"Length of {what} ({len(values)}) does not match "
                         f"the number of rows ({n_rows})")
    return values


def observation_table(coords, col='black', size=1, missing_color='darkgray'):
    """
    Build the table of points to plot: x, y, color and size per row.

    Non-numeric colors are converted to strings with missing values
    replaced by `missing_color`. Rows are not filtered here.
    """
    n_rows = len(coords)
    colors = pd.Series(_per_row(col, n_rows, 'color'), index=coords.index)
    sizes = pd.Series(_per_row(size, n_rows, 'size'), index=coords.index)

    if not pd.api.types.is_numeric_dtype(colors) or pd.api.types.is_bool_dtype(colors):
        colors = colors.astype(object).where(colors.notna(), missing_color).astype(str)

    if not pd.api.types.is_numeric_dtype(sizes):
        raise ValueError("Point sizes must be numeric")

    return pd.DataFrame({
        'x': coords.iloc[:, 0].values,
        'y': coords.iloc[:, 1].values,
        'color': colors.values,
        'size': sizes.values.astype(float),
    }, index=coords.index)


def _x_breaks(x, x_ticks, rounding):
    return np.round(np.linspace(np.floor(x.min()), np.ceil(x.max()), x_ticks), rounding)


def _format_break(value, rounding):
    if rounding <= 0:
        return str(int(value))
    return f"{value:.{rounding}f}"


def describe_density(x, main=None, x_ticks=10, rounding=0, add_points=True, col='black',
                     adjust=1, size=1, legend=False, guide_title='color', grid_size=100,
                     missing_color='darkgray'):
    """
    Compute everything needed to draw a density plot of a 2-column table.

    Parameters:
    -----------
    x : pandas.DataFrame or array-like
        Data to plot; the first two columns are used as coordinates
    main : str, optional
        Title text
    x_ticks : int
        Number of ticks on the X axis
    rounding : int
        Decimal places for the X axis tick values
    add_points : bool
        Overlay the data points
    col : str, number or array-like
        Color of the points, one value or one per row
    adjust : float
        Kernel width multiplier
    size : float or array-like
        Point size, one value or one per row
    legend : bool
        Show the legend
    guide_title : str
        Legend title for the point colors

    Returns:
    --------
    LandscapePlot
        Plot description for render_landscape
    """
    if int(x_ticks) != x_ticks or x_ticks < 1:
        raise ValueError(f"x_ticks must be a positive integer, got {x_ticks}")
    if adjust <= 0:
        raise ValueError(f"adjust must be positive, got {adjust}")

    coords = _coordinates(x)
    xvar, yvar = str(coords.columns[0]), str(coords.columns[1])

    # Attach colors and sizes before dropping rows so that they stay aligned
    table = observation_table(coords, col, size, missing_color)
    n_before = len(table)
    table = drop_missing(table)
    if len(table) < n_before:
        logger.info(f"Removed {n_before - len(table)} rows with missing coordinates")

    # Determine bandwidth for density estimation
    bw = landscape_bandwidth(table['x'], table['y'], adjust)
    surface = kde2d(table['x'], table['y'], bw, n=grid_size)

    breaks = _x_breaks(table['x'], int(x_ticks), rounding)

    return LandscapePlot(
        data=table,
        xvar=xvar,
        yvar=yvar,
        bandwidth=bw,
        surface=surface,
        encoding=point_encoding(table),
        add_points=add_points,
        x_breaks=breaks,
        rounding=rounding,
        title=main,
        legend=legend,
        guide_title=guide_title,
        x_labels=[_format_break(b, rounding) for b in breaks],
    )


def _scaled_sizes(sizes, style):
    low, high = style.size_range
    smallest = np.nanmin(sizes)
    span = np.nanmax(sizes) - smallest
    if span == 0:
        return np.full(len(sizes), low)
    return low + (sizes - smallest) / span * (high - low)


def _constant_color(value, style):
    if isinstance(value, str) and is_color_like(value):
        return value
    return sns.color_palette(style.palette, 1)[0]


def _category_colors(categories, style):
    palette = sns.color_palette(style.palette, len(categories))
    return {
        category: style.missing_color if category == style.missing_color else palette[i]
        for i, category in enumerate(categories)
    }


def _draw_points(fig, ax, plot, style):
    """Overlay the points in one scatter call, encoding what varies."""
    data = plot.data
    varies_color = plot.encoding in (PointEncoding.COLOR, PointEncoding.BOTH)
    varies_size = plot.encoding in (PointEncoding.SIZE, PointEncoding.BOTH)

    # Points without a size are not drawn; the density still includes them
    missing_size = data['size'].isna()
    if missing_size.any():
        logger.warning(f"Removed {missing_size.sum()} points with missing size")
        data = data[~missing_size]
        if len(data) == 0:
            return

    sizes = data['size'].values
    if varies_size:
        marker_sizes = _scaled_sizes(sizes, style)
    else:
        marker_sizes = np.full(len(data), sizes[0] if len(sizes) else 1)
    areas = (style.point_scale * marker_sizes) ** 2

    numeric_colors = pd.api.types.is_numeric_dtype(data['color'])
    handles = []
    mappable = None

    if varies_color and numeric_colors:
        cmap = colormaps[style.continuous_cmap].with_extremes(bad=style.missing_color)
        mappable = ax.scatter(data['x'], data['y'], c=data['color'].values, cmap=cmap,
                              s=areas, edgecolors='none', plotnonfinite=True)
    elif varies_color:
        categories = sorted(pd.unique(data['color']))
        mapping = _category_colors(categories, style)
        ax.scatter(data['x'], data['y'], c=[mapping[c] for c in data['color']],
                   s=areas, edgecolors='none')
        handles = [
            Line2D([0], [0], marker='o', linestyle='', color=mapping[c], label=str(c),
                   markersize=style.point_scale * 2)
            for c in categories
        ]
    else:
        ax.scatter(data['x'], data['y'], color=_constant_color(data['color'].iloc[0], style),
                   s=areas, edgecolors='none')

    if not plot.legend:
        return

    if mappable is not None:
        cbar = fig.colorbar(mappable, ax=ax)
        cbar.set_label(plot.guide_title)
    elif handles:
        ax.legend(handles=handles, title=plot.guide_title, bbox_to_anchor=(1.05, 1), loc='upper left')

    if varies_size:
        # Legend entries at the minimum, median and maximum size
        shown = np.nanquantile(sizes, [0, 0.5, 1])
        shown_sizes = _scaled_sizes(shown, style)
        size_handles = [
            Line2D([0], [0], marker='o', linestyle='', color='gray', label=f"{value:g}",
                   markersize=style.point_scale * marker_size)
            for value, marker_size in zip(shown, shown_sizes)
        ]
        if handles:
            # Keep the color legend when adding a second one
            ax.add_artist(ax.get_legend())
        ax.legend(handles=size_handles, title='size', bbox_to_anchor=(1.05, 0), loc='lower left')


def render_landscape(plot, style=None):
    """
    Draw a LandscapePlot with matplotlib.

    Style settings are applied within a context, leaving the global
    plotting defaults untouched.

    Returns:
    --------
    matplotlib.figure.Figure
        Landscape figure
    """
    if style is None:
        style = PlotStyle()

    rc = {'font.size': style.font_size, 'axes.titlesize': style.font_size,
          'axes.labelsize': style.font_size, 'xtick.labelsize': style.font_size * 0.8,
          'ytick.labelsize': style.font_size * 0.8, 'legend.fontsize': style.font_size * 0.6,
          'legend.title_fontsize': style.font_size * 0.7}

    with sns.axes_style(style.theme), plt.rc_context(rc):
        fig, ax = plt.subplots(figsize=style.figsize)

        # Density raster from light (low) to dark (high)
        cmap = LinearSegmentedColormap.from_list('density', [style.low_color, style.high_color])
        ax.imshow(plot.surface.z.T, origin='lower', extent=plot.surface.extent, cmap=cmap,
                  aspect='auto', interpolation='nearest')

        if plot.add_points and len(plot.data) > 0:
            _draw_points(fig, ax, plot, style)

        ax.set_xlabel(plot.xvar)
        ax.set_ylabel(plot.yvar)
        ax.grid(False)

        ax.set_xticks(plot.x_breaks)
        ax.set_xticklabels(plot.x_labels)

        if plot.title is not None:
            ax.set_title(plot.title)

        fig.tight_layout()

    return fig


def plot_density(x, main=None, x_ticks=10, rounding=0, add_points=True, col='black', adjust=1,
                 size=1, legend=False, style=None):
    """
    Density visualization for data points overlaid on a cross-plot.

    The first two columns of `x` are visualized. Missing point colors are
    drawn in dark gray.

    Returns:
    --------
    matplotlib.figure.Figure
        Density plot figure
    """
    if style is None:
        style = PlotStyle()

    plot = describe_density(x, main=main, x_ticks=x_ticks, rounding=rounding,
                            add_points=add_points, col=col, adjust=adjust, size=size,
                            legend=legend, grid_size=style.grid_size,
                            missing_color=style.missing_color)
    return render_landscape(plot, style)


def resolve_landscape_input(x, method='NMDS', distance='bray'):
    """Classify the input once as a RawProjection or a StructuredDataset."""
    if isinstance(x, (RawProjection, StructuredDataset)):
        return x
    if isinstance(x, MicrobiomeDataset):
        return StructuredDataset(x, method, distance)
    if isinstance(x, (pd.DataFrame, np.ndarray)):
        return RawProjection(_as_frame(x))
    raise TypeError(f"Cannot plot a landscape of {type(x).__name__}; "
                    "expected a MicrobiomeDataset, DataFrame or array")


def describe_landscape(x, method='NMDS', distance='bray', col=None, main=None, x_ticks=10,
                       rounding=0, add_points=True, adjust=1, size=1, legend=False,
                       grid_size=100, missing_color='darkgray'):
    """
    Plot description for plot_landscape.

    `col` may be None (one color for all samples), the name of a sample
    metadata field of a dataset (its values color the samples and the field
    name titles the legend), or color values for all or each sample.
    """
    source = resolve_landscape_input(x, method, distance)
    coords, metadata = source.project()

    guide_title = 'color'
    if col is None:
        colors = 'black'
    elif isinstance(col, str) and metadata is not None and col in metadata.columns:
        colors = metadata[col].values
        guide_title = col
    else:
        colors = col

    return describe_density(coords, main=main, x_ticks=x_ticks, rounding=rounding,
                            add_points=add_points, col=colors, adjust=adjust, size=size,
                            legend=legend, guide_title=guide_title, grid_size=grid_size,
                            missing_color=missing_color)


def plot_landscape(x, method='NMDS', distance='bray', col=None, main=None, x_ticks=10,
                   rounding=0, add_points=True, adjust=1, size=1, legend=False, style=None):
    """
    Plot the abundance landscape, i.e. sample density in a 2D projection.

    Parameters:
    -----------
    x : MicrobiomeDataset, StructuredDataset, pandas.DataFrame or numpy.ndarray
        Dataset to ordinate (a StructuredDataset reuses its ordination), or a
        table whose first two columns are the projection
    method : str
        Ordination method for datasets ('NMDS', 'PCoA' or 'MDS')
    distance : str
        Ordination distance for datasets ('bray', 'jaccard', ...)
    col : str or array-like, optional
        Metadata field name or color values for the samples
    main : str, optional
        Title text
    x_ticks : int
        Number of ticks on the X axis
    rounding : int
        Rounding for the X axis tick values
    add_points : bool
        Plot the data points as well
    adjust : float
        Kernel width adjustment
    size : float or array-like
        Point size
    legend : bool
        Show the legend
    style : PlotStyle, optional
        Rendering style

    Returns:
    --------
    matplotlib.figure.Figure
        Landscape figure
    """
    if style is None:
        style = PlotStyle()

    plot = describe_landscape(x, method=method, distance=distance, col=col, main=main,
                              x_ticks=x_ticks, rounding=rounding, add_points=add_points,
                              adjust=adjust, size=size, legend=legend,
                              grid_size=style.grid_size, missing_color=style.missing_color)
    return render_landscape(plot, style)
