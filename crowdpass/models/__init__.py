# Crowd Pass — Database Models
# Import all models here for SQLAlchemy discovery

from crowdpass.models.pass_record import PassRecord                # noqa
from crowdpass.models.penalty import PenaltyRecord                 # noqa
from crowdpass.models.sensor_log import SensorLog                  # noqa
from crowdpass.models.zone_aggregate import ZoneAggregateRecord    # noqa
from crowdpass.models.alert import AlertRecord                     # noqa
