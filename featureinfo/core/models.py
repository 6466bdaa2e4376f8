from sqlalchemy import Column, String

from featureinfo.core.database import Base


# =========================
# Time series index
# =========================
class TimeSeriesIndex(Base):
    """
    Lookup table of the stack's time-series layout:
    - dataIRI: the stream id the knowledge graph refers to
    - tableName / columnName: where that stream's values live
    Every data table has a "time" column next to its value columns.
    """

    __tablename__ = "dbTable"

    data_iri = Column("dataIRI", String, primary_key=True)
    timeseries_iri = Column("timeseriesIRI", String, nullable=False, index=True)
    table_name = Column("tableName", String, nullable=False)
    column_name = Column("columnName", String, nullable=False)
