from automail.models.automation import Automation, AutomationStep
from automail.models.enrollment import Enrollment
from automail.models.customer import Customer
from automail.models.delivery import DeliveryRecord
from automail.models.trigger_event import TriggerEvent
from automail.models.alert import Alert
