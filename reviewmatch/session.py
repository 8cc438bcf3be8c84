"""Spark session helper for reviewmatch batch runs."""

from pyspark.sql import SparkSession


def create_spark_session(app_name: str = "reviewmatch", master: str = "local[*]") -> SparkSession:
    """
    Create a configured SparkSession.

    Parameters
    ----------
    app_name : str
        Name for the Spark application
    master : str
        Spark master URL

    Returns
    -------
    SparkSession
        Configured Spark session with logging suppressed
    """
    spark = (
        SparkSession.builder.master(master)
        .appName(app_name)
        .config("spark.sql.shuffle.partitions", "8")
        .config("spark.driver.memory", "4g")
        .config("spark.ui.enabled", "false")
        .config("spark.ui.showConsoleProgress", "false")
        .config("spark.driver.extraJavaOptions", "-Djava.security.manager=allow")
        .config("spark.executor.extraJavaOptions", "-Djava.security.manager=allow")
        .getOrCreate()
    )
    spark.sparkContext.setLogLevel("ERROR")
    return spark
