"""
Bot prompts in the two supported languages.

Only the strings the booking dialogue, doctor notifications and reminders
need.
"""

from typing import Optional

from medbook.db.models import Language

TEXTS = {
    Language.ARM: {
        "welcome": "Բարի գալուստ MedBook։ Ընտրեք լեզուն։",
        "enter_name": "Խնդրում ենք գրել ձեր անունը (Անուն Ազգանուն)։",
        "name_too_short": "Անունը պետք է լինի առնվազն 2 տառ։ Խնդրում ենք կրկին փորձել։",
        "share_phone": "Խնդրում ենք կիսվել ձեր հեռախոսահամարով կամ գրել այն։",
        "share_phone_button": "📱 Կիսվել համարով",
        "skip_phone": "Բաց թողնել",
        "skip_hint": "Կամ սեղմեք «Բաց թողնել»։",
        "phone_saved": "Շնորհակալություն։",
        "invalid_phone": "Համարը սխալ է։ Օրինակ՝ +37491123456",
        "choose_service": "Ընտրեք ծառայությունը։",
        "other_service": "🔹 Այլ",
        "keep_other": "📝 Թողնել որպես «Այլ»",
        "enter_custom_reason": "Նկարագրեք ձեր այցի պատճառը։",
        "classifier_recognized": "Ձեր հարցումը ճանաչվեց որպես՝ {service}",
        "classifier_unsure": "Չհաջողվեց որոշել ծառայությունը։ Ընտրեք ցանկից կամ թողեք որպես «Այլ»։",
        "limit_reached": "Դուք արդեն ունեք {limit} ակտիվ գրանցում։ Նոր գրանցում հնարավոր է դրանցից մեկի ավարտից կամ չեղարկումից հետո։",
        "choose_date": "Ընտրեք ամսաթիվը։",
        "no_dates": "Առաջիկա օրերին ազատ ամսաթվեր չկան։ Խնդրում ենք փորձել ավելի ուշ։",
        "choose_time": "Ընտրեք ժամը։",
        "no_slots": "Այդ օրը ազատ ժամեր չկան։ Ընտրեք այլ ամսաթիվ։",
        "slot_taken": "Այդ ժամն արդեն զբաղված է։ Ընտրեք այլ ժամ։",
        "use_buttons": "Խնդրում ենք օգտվել կոճակներից։",
        "confirm_booking": "Հաստատե՞լ գրանցումը։\n\n{service_label}: {service}\n{datetime_label}: {datetime}",
        "service_label": "Ծառայություն",
        "datetime_label": "Ամսաթիվ և ժամ",
        "custom_service": "Այլ",
        "yes": "✅ Հաստատել",
        "no": "❌ Չեղարկել",
        "booking_sent": "✅ Ձեր հայտն ուղարկված է։ Բժիշկը պետք է հաստատի այն։",
        "appointment_confirmed": "✅ Ձեր գրանցումը հաստատված է։\n\n👨‍⚕️ Բժիշկ՝ Դր. {doctor_name}\n📅 {datetime}",
        "appointment_rejected": "❌ Ձեր գրանցումը մերժված է։\n\nՊատճառ՝ {reason}",
        "cancelled_by_doctor": "❌ Ձեր գրանցումը ({datetime}) չեղարկվել է բժշկի կողմից։\n\nՊատճառ՝ {reason}\n\nԽնդրում ենք գրանցվել այլ ժամի՝ /start",
        "reminder_24h": "⏰ Հիշեցում։ Ձեր գրանցումը վաղն է՝ {datetime}\n{service}",
        "reminder_2h": "⏰ Հիշեցում։ Ձեր գրանցումը 2 ժամից է՝ {datetime}\n{service}",
        "doctor_new": "👨‍⚕️ Նոր գրանցում\n\nՊացիենտ՝ {patient}\nՀեռախոս՝ {phone}\nԾառայություն՝ {service}\nԱմսաթիվ՝ {datetime}",
        "confirm": "✅ Հաստատել",
        "reject": "❌ Մերժել",
        "doctor_confirmed": "✅ Գրանցումը հաստատված է՝ {patient}, {datetime}",
        "doctor_rejected": "❌ Գրանցումը մերժված է՝ {patient}, {datetime}",
        "already_processed": "Այս գրանցումն արդեն մշակված է։",
        "generic_error": "Տեղի ունեցավ սխալ։ Խնդրում ենք սկսել նորից՝ /start",
    },
    Language.RU: {
        "welcome": "Добро пожаловать в MedBook! Выберите язык:",
        "enter_name": "Пожалуйста, введите ваше имя (Имя Фамилия):",
        "name_too_short": "Имя должно содержать минимум 2 буквы. Попробуйте ещё раз.",
        "share_phone": "Пожалуйста, поделитесь номером телефона или введите его:",
        "share_phone_button": "📱 Поделиться номером",
        "skip_phone": "Пропустить",
        "skip_hint": "Или нажмите «Пропустить»:",
        "phone_saved": "Спасибо!",
        "invalid_phone": "Неверный номер. Пример: +37491123456",
        "choose_service": "Выберите услугу:",
        "other_service": "🔹 Другое",
        "keep_other": "📝 Оставить как «Другое»",
        "enter_custom_reason": "Опишите причину вашего визита:",
        "classifier_recognized": "Ваш запрос распознан как: {service}",
        "classifier_unsure": "Не удалось определить услугу. Выберите из списка или оставьте как «Другое».",
        "limit_reached": "У вас уже есть {limit} активные записи. Новая запись возможна после завершения или отмены одной из них.",
        "choose_date": "Выберите дату:",
        "no_dates": "В ближайшие дни нет свободных дат. Попробуйте позже.",
        "choose_time": "Выберите время:",
        "no_slots": "На этот день нет свободных слотов. Выберите другую дату.",
        "slot_taken": "Это время уже занято. Выберите другое время.",
        "use_buttons": "Пожалуйста, используйте кнопки.",
        "confirm_booking": "Подтвердить запись?\n\n{service_label}: {service}\n{datetime_label}: {datetime}",
        "service_label": "Услуга",
        "datetime_label": "Дата и время",
        "custom_service": "Другое",
        "yes": "✅ Подтвердить",
        "no": "❌ Отмена",
        "booking_sent": "✅ Ваша заявка отправлена! Врач должен подтвердить её.",
        "appointment_confirmed": "✅ Ваша запись подтверждена!\n\n👨‍⚕️ Врач: Др. {doctor_name}\n📅 {datetime}",
        "appointment_rejected": "❌ Ваша запись отклонена.\n\nПричина: {reason}",
        "cancelled_by_doctor": "❌ Ваш приём ({datetime}) был отменён врачом.\n\nПричина: {reason}\n\nПожалуйста, запишитесь на другое время: /start",
        "reminder_24h": "⏰ Напоминаем! Ваша запись завтра: {datetime}\n{service}",
        "reminder_2h": "⏰ Напоминаем! Ваша запись через 2 часа: {datetime}\n{service}",
        "doctor_new": "👨‍⚕️ Новая запись\n\nПациент: {patient}\nТелефон: {phone}\nУслуга: {service}\nДата: {datetime}",
        "confirm": "✅ Подтвердить",
        "reject": "❌ Отклонить",
        "doctor_confirmed": "✅ Запись подтверждена: {patient}, {datetime}",
        "doctor_rejected": "❌ Запись отклонена: {patient}, {datetime}",
        "already_processed": "Эта запись уже обработана.",
        "generic_error": "Произошла ошибка. Пожалуйста, начните заново: /start",
    },
}

LANGUAGE_BUTTONS = {
    Language.ARM: "🇦🇲 Հայերեն",
    Language.RU: "🇷🇺 Русский",
}


def t(language: Optional[Language], key: str, **kwargs) -> str:
    """Translated string for `key`, falling back to Russian."""
    table = TEXTS.get(language or Language.RU, TEXTS[Language.RU])
    template = table[key]
    return template.format(**kwargs) if kwargs else template
