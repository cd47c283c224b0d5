"""
Table Registry

Concrete mappings from the legacy schema, keyed by the name the trigger
interface uses. MIGRATION_ORDER lists prerequisite tables first so reference
sets loaded by later tables see the rows written by earlier ones.
"""

from typing import Any, Dict, List, Optional

from legacy_pg_migration.crypto import hash_password, sha256_hex
from legacy_pg_migration.field_rules import (
    Computed,
    Derived,
    Direct,
    FanOutId,
    FanOutValue,
    Fixed,
    ForeignKey,
    RowDerivation,
    RunTimestamp,
)
from legacy_pg_migration.field_transforms import (
    choose_by_discriminator,
    clean_text,
    mask_email,
    mask_phone,
    non_zero_or,
    prefix_path,
    text_or_default,
    to_bool,
)
from legacy_pg_migration.mapping import FanOut, TableMapping, TargetColumn, UpsertOptions

SIGNATURE_FOLDER = '/Documents/TechnicalDocuments/'
HISTORICAL_TEXT = 'Historical Record'


def _audit_columns(created_by: Any = 0, stamped: bool = True) -> List[TargetColumn]:
    """created/modified/deleted bookkeeping shared by most target tables."""
    return [
        TargetColumn('created_by', 'int4', Fixed(created_by)),
        TargetColumn('created_date', 'timestamp', RunTimestamp() if stamped else Fixed(None)),
        TargetColumn('modified_by', 'int4', Fixed(None)),
        TargetColumn('modified_date', 'timestamp', Fixed(None)),
        TargetColumn('is_deleted', 'bool', Fixed(False)),
        TargetColumn('deleted_by', 'int4', Fixed(None)),
        TargetColumn('deleted_date', 'timestamp', Fixed(None)),
    ]


def _hash_user_password(context, password):
    return hash_password(password or '', context.settings.hash_iterations)


def _encrypt(context, value):
    return context.encryptor.encrypt(clean_text(value))


def _text(value):
    return str(value).strip()


def _historical_text(value):
    return text_or_default(value, HISTORICAL_TEXT)


def _price_bid_headers(*headers) -> List[tuple]:
    """
    Non-blank headers in select-list order (HEADER1..10, ExtChargeHeader1..10),
    each paired with its 1-based sequence number.
    """
    present = [str(h).strip() for h in headers if h is not None and str(h).strip()]
    return [(i, header) for i, header in enumerate(present, start=1)]


COMPANY_MASTER = TableMapping(
    name='company_master',
    description='Company master (client SAP master) copied one to one',
    source_query="""
        SELECT ClientSAPId, ClientSAPCode, ClientSAPName, SAP, PRAllocationLogic,
               Address, UploadDocument, DocumentName
        FROM TBL_CLIENTSAPMASTER
        ORDER BY ClientSAPId""",
    source_columns=['ClientSAPId', 'ClientSAPCode', 'ClientSAPName', 'SAP', 'PRAllocationLogic',
                    'Address', 'UploadDocument', 'DocumentName'],
    target_table='company_master',
    columns=[
        TargetColumn('company_id', 'int4', Direct('ClientSAPId')),
        TargetColumn('company_code', 'text', Direct('ClientSAPCode')),
        TargetColumn('company_name', 'text', Direct('ClientSAPName')),
        TargetColumn('sap_version', 'text', Direct('SAP', convert=_text)),
        TargetColumn('pr_allocation_logic', 'text', Direct('PRAllocationLogic', convert=_text)),
        TargetColumn('address', 'text', Direct('Address')),
        TargetColumn('company_logo_url', 'text', Direct('UploadDocument')),
        TargetColumn('company_logo_name', 'text', Direct('DocumentName')),
        *_audit_columns(),
    ],
)

USERS = TableMapping(
    name='users',
    description='Users with hashed passwords, encrypted and masked contact details',
    source_query="""
        SELECT PERSON_ID, USER_ID, USERPASSWORD, FULL_NAME, EMAIL_ADDRESS, MobileNumber, STATUS,
               REPORTINGTO, USERTYPE_ID, CURRENCYID, TIMEZONE, USER_SAP_ID, DEPARTMENTHEAD,
               DigitalSignature
        FROM TBL_USERMASTERFINAL
        ORDER BY PERSON_ID""",
    source_columns=['PERSON_ID', 'USER_ID', 'USERPASSWORD', 'FULL_NAME', 'EMAIL_ADDRESS', 'MobileNumber',
                    'STATUS', 'REPORTINGTO', 'USERTYPE_ID', 'CURRENCYID', 'TIMEZONE', 'USER_SAP_ID',
                    'DEPARTMENTHEAD', 'DigitalSignature'],
    target_table='users',
    derivations=[RowDerivation('password', _hash_user_password, 'USERPASSWORD', with_context=True)],
    requires_encryptor=True,
    columns=[
        TargetColumn('user_id', 'int4', Direct('PERSON_ID')),
        TargetColumn('username', 'text', Direct('USER_ID', default='')),
        TargetColumn('password_hash', 'text', Derived('password', 0, logic='PBKDF2 hash of USERPASSWORD')),
        TargetColumn('full_name', 'text', Direct('FULL_NAME', default='')),
        TargetColumn('email', 'text', Computed(_encrypt, 'EMAIL_ADDRESS', with_context=True,
                                               logic='AES encrypted EMAIL_ADDRESS')),
        TargetColumn('mobile_number', 'text', Computed(_encrypt, 'MobileNumber', with_context=True,
                                                       logic='AES encrypted MobileNumber')),
        TargetColumn('status', 'text', Direct('STATUS', convert=_text, default='')),
        TargetColumn('password_salt', 'text', Derived('password', 1, logic='Random PBKDF2 salt')),
        TargetColumn('masked_email', 'text', Computed(mask_email, 'EMAIL_ADDRESS')),
        TargetColumn('masked_mobile_number', 'text', Computed(mask_phone, 'MobileNumber')),
        TargetColumn('email_hash', 'text', Computed(sha256_hex, 'EMAIL_ADDRESS')),
        TargetColumn('mobile_hash', 'text', Computed(sha256_hex, 'MobileNumber')),
        TargetColumn('failed_login_attempts', 'int4', Fixed(0)),
        TargetColumn('last_failed_login', 'timestamp', Fixed(None)),
        TargetColumn('lockout_end', 'timestamp', Fixed(None)),
        TargetColumn('last_login_date', 'timestamp', Fixed(None)),
        TargetColumn('is_mfa_enabled', 'bool', Fixed(False)),
        TargetColumn('mfa_type', 'text', Fixed(None)),
        TargetColumn('mfa_secret', 'text', Fixed(None)),
        TargetColumn('last_mfa_sent_at', 'timestamp', Fixed(None)),
        TargetColumn('reporting_to_id', 'text', Direct('REPORTINGTO', convert=_text, default='')),
        TargetColumn('lockout_count', 'int4', Fixed(0)),
        TargetColumn('azureoid', 'text', Fixed(None)),
        TargetColumn('user_type', 'text', Direct('USERTYPE_ID', convert=_text, default='')),
        TargetColumn('currency', 'text', Direct('CURRENCYID', convert=_text, default='')),
        TargetColumn('location', 'text', Direct('TIMEZONE', default='')),
        TargetColumn('client_sap_code', 'text', Fixed(None)),
        TargetColumn('digital_signature', 'text', Direct('DigitalSignature', default='')),
        TargetColumn('last_password_changed', 'timestamp', Fixed(None)),
        TargetColumn('is_active', 'bool', Fixed(True)),
        *_audit_columns(),
        TargetColumn('erp_username', 'text', Direct('USER_SAP_ID', convert=_text, default='')),
        TargetColumn('approval_head', 'text', Direct('DEPARTMENTHEAD', convert=_text, default='')),
        TargetColumn('time_zone_country', 'text', Direct('TIMEZONE', default='')),
        TargetColumn('digital_signature_path', 'text',
                     Computed(lambda sig: prefix_path(SIGNATURE_FOLDER, sig) or '', 'DigitalSignature',
                              logic=f"{SIGNATURE_FOLDER} + DigitalSignature")),
    ],
)

USER_COMPANY_MASTER = TableMapping(
    name='user_company_master',
    description='User to company assignments, checked against users and companies',
    # Duplicate UC_id rows in the legacy table: keep the first
    source_query="""
        SELECT UC_id, UserId, ClientId
        FROM (
            SELECT UC_id, UserId, ClientId,
                   ROW_NUMBER() OVER (PARTITION BY UC_id ORDER BY UC_id) AS rn
            FROM TBL_UserClientMaster
            WHERE UC_id IS NOT NULL
        ) uc
        WHERE rn = 1
        ORDER BY UC_id""",
    source_columns=['UC_id', 'UserId', 'ClientId'],
    target_table='user_company_master',
    reference_keys={
        'company_master': 'SELECT company_id FROM company_master WHERE company_id IS NOT NULL',
        'users': 'SELECT user_id FROM users WHERE user_id IS NOT NULL',
    },
    columns=[
        TargetColumn('user_company_id', 'int4', Direct('UC_id')),
        TargetColumn('company_id', 'int4', ForeignKey('ClientId', 'company_master')),
        TargetColumn('user_id', 'int4', ForeignKey('UserId', 'users')),
        *_audit_columns(),
    ],
    upsert=UpsertOptions(
        conflict_columns=['user_company_id'],
        sequence_column='UC_id',
        update_columns=['company_id', 'user_id', 'modified_by', 'modified_date', 'is_deleted', 'deleted_by',
                        'deleted_date'],
    ),
    depends_on=['company_master', 'users'],
)

CURRENCY_MASTER = TableMapping(
    name='currency_master',
    description='Currencies, one copy per company',
    source_query="""
        SELECT CurrencyMastID, Currency_Code, Currency_Name
        FROM TBL_CURRENCYMASTER
        ORDER BY CurrencyMastID""",
    source_columns=['CurrencyMastID', 'Currency_Code', 'Currency_Name'],
    target_table='currency_master',
    reference_collections={
        'companies': 'SELECT company_id FROM company_master WHERE company_id IS NOT NULL',
    },
    fan_out=FanOut(base_source='CurrencyMastID', collection='companies'),
    upsert=UpsertOptions(
        conflict_columns=['currency_master_id'],
        sequence_column='CurrencyMastID',
        update_columns=['currency_code', 'currency_name'],
    ),
    columns=[
        TargetColumn('currency_master_id', 'int4', FanOutId()),
        TargetColumn('company_id', 'int4', FanOutValue()),
        TargetColumn('currency_code', 'text', Direct('Currency_Code')),
        TargetColumn('currency_name', 'text', Direct('Currency_Name')),
        TargetColumn('currency_short_name', 'text', Fixed(None)),
        TargetColumn('decimal_places', 'int4', Fixed(2)),
        TargetColumn('iso_code', 'text', Fixed(None)),
        *_audit_columns(),
    ],
    depends_on=['company_master'],
)

ERP_CURRENCY_EXCHANGE_RATE = TableMapping(
    name='erp_currency_exchange_rate',
    description='Currency conversion rates, one copy per company',
    source_query="""
        SELECT RecId, FromCurrency, ToCurrency, ExchangeRate, FromDate
        FROM TBL_CurrencyConversionMaster
        ORDER BY RecId""",
    source_columns=['RecId', 'FromCurrency', 'ToCurrency', 'ExchangeRate', 'FromDate'],
    target_table='erp_currency_exchange_rate',
    reference_collections={
        'companies': 'SELECT company_id FROM company_master WHERE is_deleted = false',
    },
    fan_out=FanOut(base_source='RecId', collection='companies'),
    upsert=UpsertOptions(
        conflict_columns=['erp_currency_exchange_rate_id'],
        sequence_column='RecId',
        update_columns=['from_currency', 'to_currency', 'exchange_rate', 'valid_from'],
    ),
    columns=[
        TargetColumn('erp_currency_exchange_rate_id', 'int8', FanOutId()),
        TargetColumn('company_id', 'int4', FanOutValue()),
        TargetColumn('from_currency', 'text', Computed(lambda v: text_or_default(v, 'USD'), 'FromCurrency',
                                                       logic="FromCurrency (default 'USD')")),
        TargetColumn('to_currency', 'text', Computed(lambda v: text_or_default(v, 'INR'), 'ToCurrency',
                                                     logic="ToCurrency (default 'INR')")),
        TargetColumn('exchange_rate', 'numeric', Computed(lambda v: non_zero_or(v, 1), 'ExchangeRate',
                                                          logic='ExchangeRate (1.0 when null or zero)')),
        TargetColumn('valid_from', 'timestamp', Direct('FromDate')),
        *_audit_columns(),
    ],
    depends_on=['company_master'],
)

PAYMENT_TERM_MASTER = TableMapping(
    name='payment_term_master',
    description='Payment terms per company',
    source_query="""
        SELECT PTID, PTCode, PTDescription, ClientSAPId
        FROM TBL_PAYMENTTERMMASTER
        ORDER BY PTID""",
    source_columns=['PTID', 'PTCode', 'PTDescription', 'ClientSAPId'],
    target_table='payment_term_master',
    reference_keys={'company_master': 'SELECT company_id FROM company_master WHERE company_id IS NOT NULL'},
    columns=[
        TargetColumn('payment_term_id', 'int4', Direct('PTID')),
        TargetColumn('payment_term_code', 'text', Direct('PTCode')),
        TargetColumn('payment_term_name', 'text', Direct('PTDescription')),
        TargetColumn('company_id', 'int4', ForeignKey('ClientSAPId', 'company_master')),
        *_audit_columns(),
    ],
    depends_on=['company_master'],
)

TAX_CODE_MASTER = TableMapping(
    name='tax_code_master',
    description='Tax codes per company',
    source_query="""
        SELECT TaxCode_Master_Id, TaxCode, TaxCodeDesc, ClientSAPId
        FROM TBL_TAXCODEMASTER
        ORDER BY TaxCode_Master_Id""",
    source_columns=['TaxCode_Master_Id', 'TaxCode', 'TaxCodeDesc', 'ClientSAPId'],
    target_table='tax_code_master',
    reference_keys={'company_master': 'SELECT company_id FROM company_master WHERE company_id IS NOT NULL'},
    columns=[
        TargetColumn('tax_code_id', 'int4', Direct('TaxCode_Master_Id')),
        TargetColumn('tax_code', 'text', Direct('TaxCode')),
        TargetColumn('tax_code_name', 'text', Direct('TaxCodeDesc')),
        TargetColumn('company_id', 'int4', ForeignKey('ClientSAPId', 'company_master')),
        *_audit_columns(created_by=None, stamped=False),
    ],
    depends_on=['company_master'],
)

TYPE_OF_CATEGORY_MASTER = TableMapping(
    name='type_of_category_master',
    description='Category types, one copy per company',
    source_query="""
        SELECT id, CategoryType
        FROM TBL_TypeOfCategory
        ORDER BY id""",
    source_columns=['id', 'CategoryType'],
    target_table='type_of_category_master',
    reference_collections={
        'companies': 'SELECT company_id FROM company_master WHERE company_id IS NOT NULL',
    },
    fan_out=FanOut(base_source='id', collection='companies'),
    # Existing rows are left as they are
    upsert=UpsertOptions(conflict_columns=['type_of_category_id'], sequence_column='id', update_columns=[]),
    columns=[
        TargetColumn('type_of_category_id', 'int4', FanOutId()),
        TargetColumn('type_of_category_name', 'text', Direct('CategoryType')),
        TargetColumn('company_id', 'int4', FanOutValue()),
        *_audit_columns(created_by=None, stamped=False),
    ],
    depends_on=['company_master'],
)

EVENT_SCHEDULE_HISTORY = TableMapping(
    name='event_schedule_history',
    description='Event schedule changes with dates chosen by event type',
    source_query="""
        SELECT es.EVENTSCHEDULARID, es.EVENTID, es.TIMEZONE, es.TIMEZONECOUNTRY,
               es.OPENDATETIME, es.CLOSEDATETIME, es.AUCTION_START_DATE_TIME,
               es.AUCTION_END_DATE_TIME, em.EVENTTYPE, rm.Reason
        FROM TBL_EVENTSCHEDULAR es
        INNER JOIN TBL_EVENTMASTER em ON em.EVENTID = es.EVENTID
        LEFT JOIN TBL_REASONMASTER rm ON rm.ReasonID = es.REASONID
        ORDER BY es.EVENTSCHEDULARID""",
    source_columns=['EVENTSCHEDULARID', 'EVENTID', 'TIMEZONE', 'TIMEZONECOUNTRY', 'OPENDATETIME',
                    'CLOSEDATETIME', 'AUCTION_START_DATE_TIME', 'AUCTION_END_DATE_TIME', 'EVENTTYPE',
                    'Reason'],
    target_table='event_schedule_history',
    reference_keys={'event_master': 'SELECT event_id FROM event_master WHERE event_id IS NOT NULL'},
    columns=[
        TargetColumn('event_schedule_id', 'int4', Direct('EVENTSCHEDULARID')),
        TargetColumn('event_id', 'int4', ForeignKey('EVENTID', 'event_master', required=True)),
        TargetColumn('time_zone', 'text', Computed(_historical_text, 'TIMEZONE')),
        TargetColumn('time_country', 'text', Computed(_historical_text, 'TIMEZONECOUNTRY')),
        TargetColumn('event_start_date_time', 'timestamp',
                     Computed(lambda t, open_at, start_at: choose_by_discriminator(t, 1, open_at, start_at),
                              'EVENTTYPE', 'OPENDATETIME', 'AUCTION_START_DATE_TIME',
                              logic='OPENDATETIME when EVENTTYPE = 1 else AUCTION_START_DATE_TIME')),
        TargetColumn('event_end_date_time', 'timestamp',
                     Computed(lambda t, close_at, end_at: choose_by_discriminator(t, 1, close_at, end_at),
                              'EVENTTYPE', 'CLOSEDATETIME', 'AUCTION_END_DATE_TIME',
                              logic='CLOSEDATETIME when EVENTTYPE = 1 else AUCTION_END_DATE_TIME')),
        TargetColumn('event_schedule_change_remark', 'text', Computed(_historical_text, 'Reason')),
        TargetColumn('operation_type', 'text', Fixed('INSERT')),
    ],
)

_HEADER_COLUMNS = [f"HEADER{i}" for i in range(1, 11)] + [f"ExtChargeHeader{i}" for i in range(1, 11)]

EVENT_PRICE_BID_COLUMNS = TableMapping(
    name='event_price_bid_columns',
    description='Price bid header columns, one record per non-blank header',
    source_query=f"""
        SELECT PBID, EVENTID, {', '.join(_HEADER_COLUMNS)}
        FROM TBL_PB_BUYER
        ORDER BY PBID""",
    source_columns=['PBID', 'EVENTID', *_HEADER_COLUMNS],
    target_table='event_price_bid_columns',
    reference_keys={'event_master': 'SELECT event_id FROM event_master WHERE event_id IS NOT NULL'},
    fan_out=FanOut(base_source='PBID', expand=_price_bid_headers, expand_sources=_HEADER_COLUMNS),
    upsert=UpsertOptions(conflict_columns=['event_price_bid_columns_id'], sequence_column='PBID'),
    columns=[
        TargetColumn('event_price_bid_columns_id', 'int8', FanOutId()),
        TargetColumn('event_id', 'int4', ForeignKey('EVENTID', 'event_master', required=True)),
        TargetColumn('column_name', 'text', FanOutValue(1, logic='Header text')),
        TargetColumn('sequence_number', 'int4', FanOutValue(0, logic='Position among non-blank headers')),
        *_audit_columns(),
    ],
)

PR_ATTACHMENTS = TableMapping(
    name='pr_attachments',
    description='Purchase requisition attachments including binary payloads',
    source_query="""
        SELECT PRATTACHMENTID, PRTRANSID, UPLOADPATH, FILENAME, REMARKS,
               CASE WHEN DATALENGTH(PRATTACHMENTDATA) <= ? THEN PRATTACHMENTDATA END AS PRATTACHMENTDATA,
               PR_ATTCHMNT_TYPE, CREATED_BY, CREATED_DATE, MODIFIED_BY, MODIFIED_DATE,
               IS_DELETED, DELETED_BY, DELETED_DATE
        FROM TBL_PRATTACHMENT
        ORDER BY PRATTACHMENTID""",
    source_columns=['PRATTACHMENTID', 'PRTRANSID', 'UPLOADPATH', 'FILENAME', 'REMARKS', 'PRATTACHMENTDATA',
                    'PR_ATTCHMNT_TYPE', 'CREATED_BY', 'CREATED_DATE', 'MODIFIED_BY', 'MODIFIED_DATE',
                    'IS_DELETED', 'DELETED_BY', 'DELETED_DATE'],
    target_table='pr_attachments',
    reference_keys={'erp_pr_lines': 'SELECT erp_pr_lines_id FROM erp_pr_lines WHERE erp_pr_lines_id IS NOT NULL'},
    binary_columns={'PRATTACHMENTDATA': False},
    # Oversized payloads come back as NULL and are never transferred
    source_parameters=lambda settings: [-1 if settings.skip_binary_payloads else settings.max_binary_bytes],
    upsert=UpsertOptions(
        conflict_columns=['pr_attachment_id'],
        sequence_column='PRATTACHMENTID',
        update_columns=['erp_pr_lines_id', 'upload_path', 'file_name', 'remarks', 'is_header_doc',
                        'pr_attachment_data', 'pr_attachment_extensions', 'modified_by', 'modified_date',
                        'is_deleted', 'deleted_by', 'deleted_date'],
        chunk_size=20,
    ),
    columns=[
        TargetColumn('pr_attachment_id', 'int4', Direct('PRATTACHMENTID')),
        TargetColumn('erp_pr_lines_id', 'int4', ForeignKey('PRTRANSID', 'erp_pr_lines', required=True)),
        TargetColumn('upload_path', 'text', Direct('UPLOADPATH')),
        TargetColumn('file_name', 'text', Direct('FILENAME')),
        TargetColumn('remarks', 'text', Direct('REMARKS')),
        TargetColumn('is_header_doc', 'bool', Fixed(True)),
        TargetColumn('pr_attachment_data', 'bytea', Direct('PRATTACHMENTDATA',
                                                           logic='Binary payload (null when over the size ceiling)')),
        TargetColumn('pr_attachment_extensions', 'text', Direct('PR_ATTCHMNT_TYPE')),
        TargetColumn('created_by', 'int4', Direct('CREATED_BY')),
        TargetColumn('created_date', 'timestamp', Direct('CREATED_DATE')),
        TargetColumn('modified_by', 'int4', Direct('MODIFIED_BY')),
        TargetColumn('modified_date', 'timestamp', Direct('MODIFIED_DATE')),
        TargetColumn('is_deleted', 'bool', Direct('IS_DELETED', convert=to_bool, default=False)),
        TargetColumn('deleted_by', 'int4', Direct('DELETED_BY')),
        TargetColumn('deleted_date', 'timestamp', Direct('DELETED_DATE')),
    ],
)

SUPPLIER_PRICE_BID_LOT_PRICE = TableMapping(
    name='supplier_price_bid_lot_price',
    description='Supplier lot prices, latest auction update per event and supplier wins',
    source_query="""
        SELECT EVENTID, VendorId, TOTAL, CreatedBy, CreatedDate, UpdatedBy, UpdatedDate, UPDATEID
        FROM TBL_AUC_SUPPLIERLotPrice
        WHERE EVENTID IS NOT NULL AND VendorId IS NOT NULL
        ORDER BY UPDATEID""",
    source_columns=['EVENTID', 'VendorId', 'TOTAL', 'CreatedBy', 'CreatedDate', 'UpdatedBy', 'UpdatedDate',
                    'UPDATEID'],
    target_table='supplier_price_bid_lot_price',
    reference_keys={
        'event_master': 'SELECT event_id FROM event_master WHERE event_id IS NOT NULL',
        'supplier_master': 'SELECT supplier_id FROM supplier_master WHERE supplier_id IS NOT NULL',
    },
    upsert=UpsertOptions(
        conflict_columns=['event_id', 'supplier_id'],
        sequence_column='UPDATEID',
        update_columns=['supplier_price_bid_lot_price', 'modified_by', 'modified_date'],
    ),
    columns=[
        TargetColumn('event_id', 'int4', ForeignKey('EVENTID', 'event_master', required=True)),
        TargetColumn('supplier_id', 'int4', ForeignKey('VendorId', 'supplier_master', required=True)),
        TargetColumn('supplier_price_bid_lot_price', 'numeric', Direct('TOTAL', default=0)),
        TargetColumn('created_by', 'int4', Direct('CreatedBy')),
        TargetColumn('created_date', 'timestamp', Direct('CreatedDate')),
        TargetColumn('modified_by', 'int4', Direct('UpdatedBy')),
        TargetColumn('modified_date', 'timestamp', Direct('UpdatedDate')),
        TargetColumn('is_deleted', 'bool', Fixed(False)),
        TargetColumn('deleted_by', 'int4', Fixed(None)),
        TargetColumn('deleted_date', 'timestamp', Fixed(None)),
    ],
)

def _inactive_flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return value is not None and str(value).strip() in ('Y', '1')


SUPPLIER_INACTIVE = TableMapping(
    name='supplier_inactive',
    description='Supplier inactivity flags per plant, for suppliers present in the vendor master',
    source_query="""
        SELECT vi.VendorInactiveId, vi.VendorId, vi.CompanyCode, vi.Inactive, vi.InactiveDate
        FROM TBL_VendorInactive vi
        WHERE vi.VendorId IS NOT NULL AND vi.VendorId <> 0
          AND EXISTS (SELECT 1 FROM TBL_VENDORMASTERNEW vm WHERE vm.VendorId = vi.VendorId)
        ORDER BY vi.VendorInactiveId""",
    source_columns=['VendorInactiveId', 'VendorId', 'CompanyCode', 'Inactive', 'InactiveDate'],
    target_table='supplier_inactive',
    columns=[
        TargetColumn('supplier_inactive_id', 'int4', Direct('VendorInactiveId')),
        TargetColumn('supplier_id', 'int4', Direct('VendorId')),
        TargetColumn('plant_company_code', 'text', Direct('CompanyCode')),
        TargetColumn('inactive', 'bool', Computed(_inactive_flag, 'Inactive',
                                                  logic="Inactive ('Y' or '1' is true, anything else false)")),
        TargetColumn('inactivedate', 'timestamp', Direct('InactiveDate')),
        *_audit_columns(),
    ],
)

SUPPLIER_OTHER_CONTACT = TableMapping(
    name='supplier_other_contact',
    description='Additional supplier contacts, kept only for known suppliers',
    source_query="""
        SELECT ComunicationID, VendorID, Name, MobileNo, Email
        FROM TBL_COMUNICATION
        ORDER BY ComunicationID""",
    source_columns=['ComunicationID', 'VendorID', 'Name', 'MobileNo', 'Email'],
    target_table='supplier_other_contact',
    reference_keys={'supplier_master': 'SELECT supplier_id FROM supplier_master WHERE supplier_id IS NOT NULL'},
    columns=[
        TargetColumn('supplier_other_contact_id', 'int4', Direct('ComunicationID')),
        TargetColumn('supplier_id', 'int4', ForeignKey('VendorID', 'supplier_master', required=True)),
        TargetColumn('contact_name', 'text', Direct('Name')),
        TargetColumn('contact_number', 'text', Direct('MobileNo')),
        TargetColumn('contact_email_id', 'text', Direct('Email')),
        *_audit_columns(),
    ],
)

USER_PRICE_BID_LOT_CHARGES = TableMapping(
    name='user_price_bid_lot_charges',
    description='Buyer lot charges per event',
    # Duplicate PB_BuyerChargesId rows in the legacy table: keep the first
    source_query="""
        SELECT PB_BuyerChargesId, EVENT_ID, PB_ChargesID
        FROM (
            SELECT PB_BuyerChargesId, EVENT_ID, PB_ChargesID,
                   ROW_NUMBER() OVER (PARTITION BY PB_BuyerChargesId ORDER BY PB_BuyerChargesId) AS rn
            FROM TBL_PB_BUYEROTHERCHARGES
            WHERE PB_BuyerChargesId IS NOT NULL
        ) bc
        WHERE rn = 1
        ORDER BY PB_BuyerChargesId""",
    source_columns=['PB_BuyerChargesId', 'EVENT_ID', 'PB_ChargesID'],
    target_table='user_price_bid_lot_charges',
    reference_keys={
        'event_master': 'SELECT event_id FROM event_master WHERE event_id IS NOT NULL',
        'price_bid_charges_master': (
            'SELECT price_bid_charges_id FROM price_bid_charges_master WHERE price_bid_charges_id IS NOT NULL'
        ),
    },
    upsert=UpsertOptions(
        conflict_columns=['user_price_bid_lot_charges_id'],
        sequence_column='PB_BuyerChargesId',
        update_columns=['event_id', 'price_bid_charges_id', 'mandatory', 'modified_by', 'modified_date',
                        'is_deleted', 'deleted_by', 'deleted_date'],
    ),
    columns=[
        TargetColumn('user_price_bid_lot_charges_id', 'int4', Direct('PB_BuyerChargesId')),
        TargetColumn('event_id', 'int4', ForeignKey('EVENT_ID', 'event_master')),
        TargetColumn('price_bid_charges_id', 'int4', ForeignKey('PB_ChargesID', 'price_bid_charges_master')),
        TargetColumn('mandatory', 'bool', Fixed(False)),
        *_audit_columns(created_by=None, stamped=False),
    ],
)

TABLE_MAPPINGS: Dict[str, TableMapping] = {
    m.name: m for m in (
        COMPANY_MASTER,
        USERS,
        USER_COMPANY_MASTER,
        CURRENCY_MASTER,
        ERP_CURRENCY_EXCHANGE_RATE,
        PAYMENT_TERM_MASTER,
        TAX_CODE_MASTER,
        TYPE_OF_CATEGORY_MASTER,
        EVENT_SCHEDULE_HISTORY,
        EVENT_PRICE_BID_COLUMNS,
        USER_PRICE_BID_LOT_CHARGES,
        PR_ATTACHMENTS,
        SUPPLIER_PRICE_BID_LOT_PRICE,
        SUPPLIER_INACTIVE,
        SUPPLIER_OTHER_CONTACT,
    )
}


def migration_order(mappings: Optional[Dict[str, TableMapping]] = None) -> List[str]:
    """
    Table names with every table after the tables it depends on.

    Raises:
        ValueError: On unknown dependencies or cycles
    """
    mappings = TABLE_MAPPINGS if mappings is None else mappings
    ordered: List[str] = []
    visiting = set()

    def visit(name: str) -> None:
        if name in ordered:
            return
        if name in visiting:
            raise ValueError(f"Dependency cycle involving {name}")
        if name not in mappings:
            raise ValueError(f"Unknown table dependency: {name}")
        visiting.add(name)
        for dependency in mappings[name].depends_on:
            visit(dependency)
        visiting.discard(name)
        ordered.append(name)

    for table_name in mappings:
        visit(table_name)
    return ordered

