"""
CSV reader using Spark for the event and transaction feeds.
"""

from pyspark.sql import DataFrame, SparkSession
from pyspark.sql import functions as F

LOAD_DATE_DIR_PATTERN = r"(\d{4}-\d{2}-\d{2})/[^/]+$"


class CSVReader:
    """
    Reads feed files with Spark, every column as a string.

    Typing is left to the normalizer so that a malformed value is counted
    as a defect instead of being silently nulled by schema inference.
    """

    def __init__(self, spark: SparkSession):
        self.spark = spark

    def read(
        self,
        path: str | list[str],
        header: bool = True,
        delimiter: str = ",",
    ) -> DataFrame:
        """
        Read one or several CSV files (globs allowed) into a DataFrame.

        Args:
            path: File path, glob, or list of them
            header: Whether files have a header row
            delimiter: Field delimiter

        Returns:
            Spark DataFrame with string columns
        """
        return self.spark.read \
            .option("header", str(header).lower()) \
            .option("delimiter", delimiter) \
            .option("inferSchema", "false") \
            .option("mode", "PERMISSIVE") \
            .csv(path)

    def read_with_load_date(self, path: str | list[str], **options) -> DataFrame:
        """
        Read files laid out as <base>/<YYYY-MM-DD>/<file>.csv and add a
        load_date column taken from the directory name.
        """
        df = self.read(path, **options)
        day = F.regexp_extract(F.col("_metadata.file_path"), LOAD_DATE_DIR_PATTERN, 1)
        return df.withColumn("load_date", F.when(day != "", F.to_date(day)))
