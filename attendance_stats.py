"""
Attendance aggregation helpers.

Reconciles daily attendance marks against the non-working-day calendar and
rolls them up into per-student, per-group and per-window statistics. Nothing
in here touches the database; callers pass plain rows/dicts in.
"""

import json
from collections import OrderedDict
from datetime import date, datetime, timedelta

VALID_STATUSES = ('present', 'absent', 'holiday')
DEFAULT_THRESHOLD = 75
UNKNOWN_LABEL = 'Unknown'
NOT_SPECIFIED_LABEL = 'Not Specified'
ABSTRACT_DIMENSIONS = ('college', 'batch', 'course', 'branch', 'year', 'semester')
NUMERIC_LABELS = ('year', 'semester')

# Column first, then the keys older registration forms stored in student_data.
LABEL_SOURCES = {
    'college': ('college', ('College', 'college')),
    'course': ('course', ('Course', 'course')),
    'batch': ('batch', ('Batch', 'batch')),
    'branch': ('branch', ('Branch', 'branch')),
    'year': ('current_year', ('Current Academic Year', 'current_year')),
    'semester': ('current_semester', ('Current Semester', 'current_semester')),
}


def parse_date(value):
    """Return a date for date/datetime/ISO-string input, else None."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if len(text) < 10:
        return None
    try:
        return datetime.strptime(text[:10], '%Y-%m-%d').date()
    except ValueError:
        return None


def date_key(value):
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def iter_date_keys(start, end):
    start_date = parse_date(start)
    end_date = parse_date(end)
    if not start_date or not end_date or start_date > end_date:
        return []
    keys = []
    cursor = start_date
    while cursor <= end_date:
        keys.append(cursor.isoformat())
        cursor += timedelta(days=1)
    return keys


def percentage(part, whole):
    if not whole:
        return 0.0
    return round((part / whole) * 100, 2)


def parse_student_data(value):
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _first_present(*values):
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if value == 0 and not isinstance(value, bool):
            # current_year/current_semester use 0 as "not set"
            continue
        return value
    return None


def _label_text(name, value):
    # free-form student_data can hold lists/objects; labels must be hashable scalars
    if isinstance(value, (list, tuple)):
        value = ', '.join(str(v).strip() for v in value if v is not None and str(v).strip())
    elif isinstance(value, dict):
        value = json.dumps(value, sort_keys=True)
    if name in NUMERIC_LABELS and isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, str):
        value = value.strip()
    if value == '' or (name in NUMERIC_LABELS and value == 0):
        return None
    return value


def resolve_student_labels(row):
    """Resolve grouping labels for a student row with 'Unknown' fallbacks."""
    row = row or {}
    student_data = parse_student_data(row.get('student_data'))
    labels = {}
    for name, (column, data_keys) in LABEL_SOURCES.items():
        value = _first_present(row.get(column), *(student_data.get(k) for k in data_keys))
        value = _label_text(name, value) if value is not None else None
        labels[name] = value if value is not None else UNKNOWN_LABEL
    labels['student_name'] = _first_present(
        row.get('student_name'),
        student_data.get('Student Name'),
        student_data.get('student_name'),
    ) or UNKNOWN_LABEL
    labels['pin_number'] = _first_present(
        row.get('pin_no'),
        student_data.get('PIN Number'),
        student_data.get('Pin Number'),
        student_data.get('pin_number'),
    )
    return labels


def calculate_student_stats(attendance_map, date_keys, holiday_dates):
    """Count working/present/absent/holiday/unmarked days for one student.

    A day is a holiday when the calendar says so or the student was marked
    'holiday' on it; every other day in range is a working day.
    """
    holiday_dates = holiday_dates or set()
    present = absent = working = holidays = unmarked = 0
    for key in date_keys:
        status = attendance_map.get(key)
        if key in holiday_dates or status == 'holiday':
            holidays += 1
            continue
        working += 1
        if status == 'present':
            present += 1
        elif status == 'absent':
            absent += 1
        else:
            unmarked += 1
    return {
        'working_days': working,
        'present_days': present,
        'absent_days': absent,
        'holidays': holidays,
        'unmarked_days': unmarked,
        'attendance_percentage': percentage(present, working),
    }


def calculate_aggregate_stats(students, marked_dates, holiday_dates, threshold=DEFAULT_THRESHOLD):
    """Aggregate statistics over a list of students that carry 'statistics'."""
    holiday_dates = holiday_dates or set()
    total_working_days = sum(1 for key in marked_dates if key not in holiday_dates)
    good = poor = total_present = total_absent = 0
    for student in students:
        stats = student.get('statistics') or {}
        if (stats.get('attendance_percentage') or 0) >= threshold:
            good += 1
        else:
            poor += 1
        total_present += stats.get('present_days', 0)
        total_absent += stats.get('absent_days', 0)
    total_students = len(students)
    return {
        'total_students': total_students,
        'total_working_days': total_working_days,
        'total_present_days': total_present,
        'total_absent_days': total_absent,
        'students_above_threshold': good,
        'students_below_threshold': poor,
        'present_students_percentage': percentage(good, total_students),
        'absent_students_percentage': percentage(poor, total_students),
        'overall_attendance_percentage': percentage(total_present, total_working_days * total_students),
    }


def build_attendance_report(student_rows, attendance_rows, start, end, holiday_dates,
                            threshold=DEFAULT_THRESHOLD):
    """Build the per-student sheet report for a date range."""
    keys = iter_date_keys(start, end)
    in_range = set(keys)
    students = OrderedDict()
    for row in student_rows:
        labels = resolve_student_labels(row)
        students[row.get('id')] = {
            'id': row.get('id'),
            'admission_number': row.get('admission_number'),
            'pin_number': labels['pin_number'],
            'student_name': labels['student_name'],
            'college': labels['college'],
            'course': labels['course'],
            'batch': labels['batch'],
            'branch': labels['branch'],
            'year': labels['year'],
            'semester': labels['semester'],
            'attendance': {},
        }

    marked_dates = set()
    for row in attendance_rows:
        key = date_key(row.get('attendance_date'))
        if not key or key not in in_range:
            continue
        marked_dates.add(key)
        student = students.get(row.get('student_id'))
        if student is not None:
            student['attendance'][key] = row.get('status')

    sheet = []
    for student in students.values():
        student['statistics'] = calculate_student_stats(student['attendance'], keys, holiday_dates)
        sheet.append(student)

    return {
        'students': sheet,
        'dates': keys,
        'statistics': calculate_aggregate_stats(sheet, marked_dates, holiday_dates, threshold),
    }


def build_day_end_report(rows, excluded_courses=()):
    """Group one day's student/status rows by cohort and measure completeness."""
    excluded = {c.strip().lower() for c in excluded_courses if c and c.strip()}
    groups = {}
    for row in rows:
        labels = resolve_student_labels(row)
        if str(labels['course']).lower() in excluded:
            continue
        key = tuple(str(labels[d]) for d in ('college', 'course', 'batch', 'branch', 'year', 'semester'))
        group = groups.get(key)
        if group is None:
            group = {
                'college': labels['college'],
                'course': labels['course'],
                'batch': labels['batch'],
                'branch': labels['branch'],
                'year': labels['year'],
                'semester': labels['semester'],
                'total_students': 0,
                'present_count': 0,
                'absent_count': 0,
                'holiday_count': 0,
            }
            groups[key] = group
        group['total_students'] += 1
        status = (row.get('attendance_status') or '').lower()
        if status in VALID_STATUSES:
            group[status + '_count'] += 1

    grouped = []
    totals = {'total_students': 0, 'present': 0, 'absent': 0, 'holiday': 0}
    for key in sorted(groups):
        group = groups[key]
        marked = group['present_count'] + group['absent_count'] + group['holiday_count']
        group['marked_count'] = marked
        group['unmarked_count'] = group['total_students'] - marked
        group['attendance_percentage'] = percentage(group['present_count'], group['total_students'])
        group['is_fully_marked'] = group['unmarked_count'] == 0 and group['total_students'] > 0
        grouped.append(group)
        totals['total_students'] += group['total_students']
        totals['present'] += group['present_count']
        totals['absent'] += group['absent_count']
        totals['holiday'] += group['holiday_count']

    marked_total = totals['present'] + totals['absent'] + totals['holiday']
    return {
        'total_students': totals['total_students'],
        'daily': {
            'present': totals['present'],
            'absent': totals['absent'],
            'holiday': totals['holiday'],
        },
        'marked_today': marked_total,
        'unmarked_today': max(0, totals['total_students'] - marked_total),
        'grouped_summary': grouped,
        'all_marked': bool(grouped) and all(g['is_fully_marked'] for g in grouped),
    }


def normalize_group_by(group_by):
    """Parse 'college,batch' or a list into validated dimensions."""
    if not group_by:
        return list(ABSTRACT_DIMENSIONS), None
    if isinstance(group_by, str):
        group_by = [part.strip().lower() for part in group_by.split(',') if part.strip()]
    dims = []
    for dim in group_by:
        if dim not in ABSTRACT_DIMENSIONS:
            return None, f'Unknown grouping dimension: {dim}'
        if dim not in dims:
            dims.append(dim)
    if not dims:
        return list(ABSTRACT_DIMENSIONS), None
    return dims, None


def _group_sort_key(values):
    # numeric year/semester sort before text labels like 'Unknown'
    return tuple((0, int(v), '') if str(v).isdigit() else (1, 0, str(v)) for v in values)


def build_abstract(rows, group_by=None, count_field=None):
    """Count rows per group; optionally break counts out by another field.

    Returns (result, error).
    """
    dims, err = normalize_group_by(group_by)
    if err:
        return None, err
    groups = {}
    columns = set()
    for row in rows:
        labels = resolve_student_labels(row)
        key = tuple(str(labels[d]) for d in dims)
        group = groups.get(key)
        if group is None:
            group = {d: labels[d] for d in dims}
            group['total'] = 0
            if count_field:
                group['counts'] = {}
            groups[key] = group
        group['total'] += 1
        if count_field:
            raw = row.get(count_field)
            value = str(raw).strip() if raw is not None else ''
            value = value or NOT_SPECIFIED_LABEL
            columns.add(value)
            group['counts'][value] = group['counts'].get(value, 0) + 1

    data = [groups[key] for key in sorted(groups, key=_group_sort_key)]
    result = {
        'group_by': dims,
        'data': data,
        'grand_total': sum(g['total'] for g in data),
    }
    if count_field:
        result['columns'] = sorted(columns)
    return result, None


def attendance_abstract(sheet_students, group_by=None, threshold=DEFAULT_THRESHOLD):
    """Roll a sheet report's per-student statistics up into groups.

    Returns (result, error).
    """
    dims, err = normalize_group_by(group_by)
    if err:
        return None, err
    groups = {}
    for student in sheet_students:
        key = tuple(str(student.get(d, UNKNOWN_LABEL)) for d in dims)
        group = groups.get(key)
        if group is None:
            group = {d: student.get(d, UNKNOWN_LABEL) for d in dims}
            group.update({
                'students': 0,
                'present_days': 0,
                'absent_days': 0,
                'working_days': 0,
                'below_threshold': 0,
                '_pct_sum': 0.0,
            })
            groups[key] = group
        stats = student.get('statistics') or {}
        pct = stats.get('attendance_percentage') or 0
        group['students'] += 1
        group['present_days'] += stats.get('present_days', 0)
        group['absent_days'] += stats.get('absent_days', 0)
        group['working_days'] += stats.get('working_days', 0)
        group['_pct_sum'] += pct
        if pct < threshold:
            group['below_threshold'] += 1

    data = []
    for key in sorted(groups, key=_group_sort_key):
        group = groups[key]
        pct_sum = group.pop('_pct_sum')
        group['average_percentage'] = round(pct_sum / group['students'], 2) if group['students'] else 0.0
        data.append(group)
    return {'group_by': dims, 'threshold': threshold, 'data': data}, None


def week_window(ref):
    ref_date = parse_date(ref)
    start = ref_date - timedelta(days=ref_date.weekday())
    return start, ref_date


def month_window(ref):
    ref_date = parse_date(ref)
    return ref_date.replace(day=1), ref_date


def semester_window(ref, semester):
    """Clip a semester's date range to the reference date."""
    ref_date = parse_date(ref)
    if not semester or not ref_date:
        return None
    start = parse_date(semester.get('start_date'))
    end = parse_date(semester.get('end_date'))
    if not start or not end or ref_date < start:
        return None
    return start, min(end, ref_date)


def build_history_series(attendance_map, start, end, non_working):
    non_working = non_working or {}
    series = []
    totals = {'present': 0, 'absent': 0, 'unmarked': 0, 'holidays': 0}
    for key in iter_date_keys(start, end):
        status = attendance_map.get(key)
        info = non_working.get(key)
        is_holiday = info is not None or status == 'holiday'
        if is_holiday:
            totals['holidays'] += 1
        elif status == 'present':
            totals['present'] += 1
        elif status == 'absent':
            totals['absent'] += 1
        else:
            totals['unmarked'] += 1
        reasons = list(info.get('reasons', [])) if info else []
        if status == 'holiday' and not reasons:
            reasons = ['Marked holiday']
        series.append({
            'date': key,
            'status': status,
            'is_holiday': is_holiday,
            'reasons': reasons,
        })
    working = totals['present'] + totals['absent'] + totals['unmarked']
    totals['working_days'] = working
    totals['percentage'] = percentage(totals['present'], working)
    return {
        'start_date': date_key(start),
        'end_date': date_key(end),
        'series': series,
        'totals': totals,
    }


def build_student_history(attendance_map, ref, non_working, semester=None):
    """Weekly, monthly and semester history ending at the reference date."""
    week_start, week_end = week_window(ref)
    month_start, month_end = month_window(ref)
    history = {
        'reference_date': date_key(ref),
        'weekly': build_history_series(attendance_map, week_start, week_end, non_working),
        'monthly': build_history_series(attendance_map, month_start, month_end, non_working),
        'semester': None,
    }
    window = semester_window(ref, semester)
    if window:
        history['semester'] = build_history_series(attendance_map, window[0], window[1], non_working)
    return history


def calendar_day_status(key, is_holiday, submitted_count, today_key):
    if is_holiday:
        return 'holiday'
    if submitted_count and submitted_count > 0:
        return 'submitted'
    if key < today_key:
        return 'not_marked'
    if key == today_key:
        return 'pending'
    return 'upcoming'
