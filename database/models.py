from datetime import datetime
from enum import Enum

from peewee import (
    AutoField,
    BigIntegerField,
    CharField,
    DateTimeField,
    FloatField,
    IntegerField,
    Model,
    TextField,
)

from database.db import db


class EntityType(str, Enum):
    """Типы сущностей, которые знает сервер синхронизации."""

    APPOINTMENT = "appointment"
    RISK_ASSESSMENT_MASTER = "risk_assessment_master"
    RISK_ASSESSMENT_ITEM = "risk_assessment_item"


class BaseModel(Model):
    class Meta:
        database = db


class SyncModel(BaseModel):
    """Базовая модель с флагом изменений ``pending_sync`` (0 чистая, 1 изменена)."""

    pending_sync = IntegerField(default=0, index=True)

    @classmethod
    def pending(cls):
        return cls.select().where(cls.pending_sync == 1)


class Appointment(SyncModel):
    appointment_id = BigIntegerField(primary_key=True, column_name="appointmentID")
    order_id = BigIntegerField(null=True, column_name="orderID")
    start_time = TextField(null=True, column_name="startTime")
    end_time = TextField(null=True, column_name="endTime")
    follow_up_date = TextField(null=True, column_name="followUpDate")
    arrival_time = TextField(null=True, column_name="arrivalTime")
    departure_time = TextField(null=True, column_name="departureTime")
    invite_status = TextField(null=True, column_name="inviteStatus")
    meeting_status = TextField(null=True, column_name="meetingStatus")
    location = TextField(null=True)
    comments = TextField(null=True)
    category = TextField(null=True)
    outoftown = TextField(null=True)
    surveyor_comments = TextField(null=True, column_name="surveyorComments")
    event_id = TextField(null=True, column_name="eventId")
    surveyor_email = TextField(null=True, column_name="surveyorEmail")
    date_modified = TextField(null=True, column_name="dateModified")

    class Meta:
        table_name = "appointments"


class RiskAssessmentMaster(SyncModel):
    riskassessmentid = BigIntegerField(primary_key=True)
    assessmenttypename = TextField(null=True)
    surveydate = TextField(null=True)
    clientnumber = TextField(null=True)
    comments = TextField(null=True)
    totalvalue = FloatField(null=True)
    iscomplete = IntegerField(default=0)

    class Meta:
        table_name = "risk_assessment_master"


class RiskAssessmentItem(SyncModel):
    riskassessmentitemid = BigIntegerField(primary_key=True)
    riskassessmentcategoryid = BigIntegerField(null=True, index=True)
    itemprompt = TextField(null=True)
    itemtype = IntegerField(null=True)
    rank = IntegerField(null=True)
    commaseparatedlist = TextField(null=True)
    selectedanswer = TextField(null=True)
    qty = IntegerField(null=True)
    price = FloatField(null=True)
    description = TextField(null=True)
    model = TextField(null=True)
    location = TextField(null=True)
    assessmentregisterid = BigIntegerField(null=True)
    assessmentregistertypeid = BigIntegerField(null=True)
    datecreated = TextField(null=True)
    createdbyid = TextField(null=True)
    dateupdated = TextField(null=True)
    updatedbyid = TextField(null=True)
    issynced = IntegerField(default=0)
    syncversion = IntegerField(null=True)
    deviceid = TextField(null=True)
    syncstatus = TextField(null=True)
    synctimestamp = TextField(null=True)
    hasphoto = IntegerField(default=0)
    latitude = FloatField(null=True)
    longitude = FloatField(null=True)
    notes = TextField(null=True)

    class Meta:
        table_name = "risk_assessment_items"


class MediaFile(SyncModel):
    media_id = AutoField(column_name="MediaID")
    file_name = TextField(column_name="FileName")
    file_type = TextField(null=True, column_name="FileType")
    blob_url = TextField(default="", column_name="BlobURL")
    entity_name = CharField(column_name="EntityName")
    entity_id = BigIntegerField(column_name="EntityID")
    uploaded_at = TextField(null=True, column_name="UploadedAt")
    uploaded_by = TextField(null=True, column_name="UploadedBy")
    is_deleted = IntegerField(default=0, column_name="IsDeleted")
    metadata = TextField(null=True, column_name="Metadata")
    local_path = TextField(null=True, column_name="LocalPath")

    class Meta:
        table_name = "media_files"
        indexes = ((("entity_name", "entity_id"), False),)


class DeletedEntity(BaseModel):
    """Отметка о физически удалённой строке, уходит на сервер в ``deletedEntities``."""

    id = AutoField()
    entity_type = CharField()
    entity_id = BigIntegerField()
    deleted_at = DateTimeField(default=datetime.utcnow)

    class Meta:
        table_name = "deleted_entities"


class LocalIdSequence(BaseModel):
    """Последний выданный локальный id по каждой таблице."""

    table = CharField(primary_key=True)
    last_id = BigIntegerField(default=0)

    class Meta:
        table_name = "local_id_sequence"
