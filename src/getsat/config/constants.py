"""Constants for catalog access, retries and data sources."""

DEFAULT_TMP_DIR = "/tmp/getsat"
DEFAULT_STAC_API_URL = "https://planetarycomputer.microsoft.com/api/stac/v1"

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAY = 2.0
DEFAULT_HTTP_TIMEOUT = 60.0
DEFAULT_SEARCH_LIMIT = 999

DEFAULT_POINT_MARGIN = 0.15
OUTPUT_CRS = "EPSG:4326"

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

MODIS_FAMILY_PREFIX = "modis"
MODIS_TILE_PATTERN = r"\.A(?P<year>\d{4})(?P<doy>\d{3})\.(?P<tile>h\d{2}v\d{2})\."

DEM_COLLECTIONS: dict[int, str] = {
    30: "cop-dem-glo-30",
    90: "cop-dem-glo-90",
}
DEM_ASSET_KEY = "data"
DEM_TILE_PATTERN = r"^Copernicus_DSM_COG_\d+_(?P<tile>[NS]\d{2}_\d{2}_[EW]\d{3}_\d{2})"

LULC_COLLECTION = "io-lulc-annual-v02"
LULC_ASSET_KEY = "data"
LULC_TILE_PATTERN = r"^(?P<tile>[^-]+)-(?P<year>\d{4})"
LULC_YEARS = range(2017, 2024)

# Class values 3 and 6 are unused by the product
LULC_CLASS_LABELS: dict[int, str] = {
    1: "Water",
    2: "Trees",
    4: "Flooded vegetation",
    5: "Crops",
    7: "Built area",
    8: "Bare ground",
    9: "Snow/ice",
    10: "Clouds",
    11: "Rangeland",
}

# Gridded products served as whole netCDF files over HTTP
FILE_CACHE_DIRNAME = "files"

TERRACLIMATE_COLLECTION = "terraclimate"
TERRACLIMATE_URL_TEMPLATE = (
    "http://thredds.northwestknowledge.net:8080/thredds/fileServer/TERRACLIMATE_ALL/data/TerraClimate_{variable}_{year}.nc"
)
TERRACLIMATE_FIRST_YEAR = 1958
TERRACLIMATE_MARGIN = 0.2
TERRACLIMATE_VARIABLES: dict[str, str] = {
    "aet": "Actual evapotranspiration (monthly total)",
    "def": "Climate water deficit (monthly total)",
    "pet": "Potential evapotranspiration (monthly total)",
    "ppt": "Precipitation (monthly total)",
    "q": "Runoff (monthly total)",
    "soil": "Soil moisture (end of month)",
    "srad": "Downward surface shortwave radiation (monthly mean)",
    "swe": "Snow water equivalent (end of month)",
    "tmax": "Maximum temperature (monthly average)",
    "tmin": "Minimum temperature (monthly average)",
    "vap": "Vapor pressure (monthly average)",
    "vpd": "Vapor pressure deficit (monthly average)",
    "ws": "Wind speed (monthly average)",
    "PDSI": "Palmer drought severity index (end of month)",
}

LCCS_COLLECTION = "esa-cci-lccs"
LCCS_URL_TEMPLATE = (
    "https://dap.ceda.ac.uk/neodc/esacci/land_cover/data/pft/v2.0.8/ESACCI-LC-L4-PFT-Map-300m-P1Y-{year}-v2.0.8.nc"
)
LCCS_YEARS = range(1992, 2021)
LCCS_MARGIN = 0.15
# Plant functional type layers in file order; the dominant class code is the 1-based position
LCCS_CLASSES: tuple[str, ...] = (
    "WATER",
    "BARE",
    "BUILT",
    "GRASS-MAN",
    "GRASS-NAT",
    "SHRUBS-BD",
    "SHRUBS-BE",
    "SHRUBS-ND",
    "SHRUBS-NE",
    "WATER_INLAND",
    "SNOWICE",
    "TREES-BD",
    "TREES-BE",
    "TREES-ND",
    "TREES-NE",
    "LAND",
    "WATER_OCEAN",
)
LCCS_ALL_CLASSES = "all"

GMTED_URLS: dict[float, str] = {
    0.0625: "https://d1qb6yzwaaq4he.cloudfront.net/data/gmted2010/GMTED2010_15n015_00625deg.nc",
    0.125: "https://d1qb6yzwaaq4he.cloudfront.net/data/gmted2010/GMTED2010_15n030_0125deg.nc",
    0.25: "https://d1qb6yzwaaq4he.cloudfront.net/data/gmted2010/GMTED2010_15n060_0250deg.nc",
    0.5: "https://d1qb6yzwaaq4he.cloudfront.net/data/gmted2010/GMTED2010_15n120_0500deg.nc",
    0.75: "https://d1qb6yzwaaq4he.cloudfront.net/data/gmted2010/GMTED2010_15n180_0750deg.nc",
    1.0: "https://d1qb6yzwaaq4he.cloudfront.net/data/gmted2010/GMTED2010_15n240_1000deg.nc",
}
GMTED_VARIABLE = "elevation"
GMTED_MARGIN = 0.1
